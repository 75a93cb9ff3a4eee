"""
Utilities for mapping remote resources to their place in the local mirror.
"""

from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from pathvalidate import sanitize_filename, sanitize_filepath

from hls_offline.models.asset import StageTag


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def program_dir_name(program_id: str) -> str:
    """The directory name holding every file of one program."""
    name = sanitize_filename(program_id, platform="auto")
    if name in ("", ".", ".."):
        raise ValueError(f"Program ID '{program_id}' cannot be used as a directory.")
    return name


def mirror_path(url: str) -> str:
    """
    Returns `<host>/<path>` for a URL, the layout that lets a rewritten
    manifest resolve its references locally.
    """
    parsed = urlparse(url)
    if not parsed.netloc:
        raise ValueError(f"Cannot mirror a URL without a host: {url}")
    parts = [
        part
        for part in PurePosixPath(unquote(parsed.path)).parts
        if part not in ("/", ".", "..")
    ]
    relative = "/".join([parsed.netloc, *parts])
    return sanitize_filepath(relative, platform="auto")


def relative_destination(
    url: str, stage: StageTag, program_id: str, master_manifest_name: str
) -> str:
    """
    The destination of a fetch, relative to the download directory.

    The master manifest always lands at `<program_id>/<master_manifest_name>`;
    every other resource at `<program_id>/<host>/<path>`.
    """
    root = program_dir_name(program_id)
    if stage is StageTag.MASTER:
        return f"{root}/{master_manifest_name}"
    return f"{root}/{mirror_path(url)}"


def is_within(path: Path, root: Path) -> bool:
    """True if `path` resolves to `root` or somewhere below it."""
    return path.resolve().is_relative_to(root.resolve())
