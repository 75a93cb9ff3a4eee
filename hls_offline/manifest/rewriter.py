"""
Rewrites a downloaded manifest so its references point at the local mirror.

Downloaded resources are stored under `<program_id>/<host>/<path>`, so dropping
the scheme from an absolute reference turns it into a path under the download
directory. Only scheme prefixes are touched; the line structure is preserved.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from urllib.parse import urljoin

log = logging.getLogger(__name__)

SCHEME_PREFIXES = ("http://", "https://")
_URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')


def strip_schemes(text: str) -> str:
    """Removes every `http://` and `https://` occurrence."""
    for prefix in SCHEME_PREFIXES:
        text = text.replace(prefix, "")
    return text


def absolutize_references(text: str, base_url: str) -> str:
    """
    Resolves every URI line and `URI="..."` attribute against `base_url`.

    Used for manifests stored outside the mirrored host/path layout, where a
    relative reference would otherwise stop resolving once the scheme is gone.
    """
    lines = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body) :]
        if body.startswith("#"):
            body = _URI_ATTRIBUTE.sub(
                lambda m: f'URI="{urljoin(base_url, m.group(1))}"', body
            )
        elif body.strip():
            body = urljoin(base_url, body.strip())
        lines.append(body + ending)
    return "".join(lines)


def _write_atomic(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def _transform_manifest(manifest_path: Path, transform) -> bool:
    try:
        with open(manifest_path, encoding="utf-8", newline="") as f:
            original = f.read()
    except (OSError, UnicodeDecodeError) as e:
        log.error(f"[red]Could not read manifest '{manifest_path}': {e}[/red]")
        return False

    rewritten = transform(original)
    if rewritten == original:
        return True

    try:
        _write_atomic(Path(manifest_path), rewritten)
    except OSError as e:
        log.error(f"[red]Could not rewrite manifest '{manifest_path}': {e}[/red]")
        return False
    log.debug(f"Rewrote manifest '{manifest_path}'.")
    return True


def rewrite_manifest(manifest_path: Path) -> bool:
    """
    Strips URL schemes from the manifest at `manifest_path`, in place.

    Rewriting an already rewritten manifest leaves it byte-for-byte unchanged.

    Returns:
        True if the file is now rewritten, False if it could not be read or
        written. Failures are logged, never raised.
    """
    return _transform_manifest(manifest_path, strip_schemes)


def absolutize_manifest(manifest_path: Path, base_url: str) -> bool:
    """
    Resolves the relative references of a freshly downloaded manifest against
    `base_url`, the URL it was fetched from. Run once, before `rewrite_manifest`.
    """
    return _transform_manifest(
        manifest_path, lambda text: absolutize_references(text, base_url)
    )
