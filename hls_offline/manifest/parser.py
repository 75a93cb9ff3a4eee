"""
Extracts the URIs an HLS manifest references, for the four manifest shapes the
download pipeline walks through.
"""

import re
from enum import Enum
from urllib.parse import urljoin

from hls_offline.exceptions import ManifestParseError


class Grammar(Enum):
    """
    A manifest shape and the reference it yields.

    Each member carries its compiled line-anchored pattern, whether the
    pipeline requires at least one match, and whether every match is used or
    only the first.
    """

    MASTER_VIDEO = ("master-video", r"^([^#\s].*\.m3u8)[ \t\r]*$", True, False)
    MASTER_SUBTITLES = (
        "master-subtitles",
        r'^#EXT-X-MEDIA:TYPE=SUBTITLES.*URI="([^"]+)".*$',
        False,
        False,
    )
    VIDEO_SEGMENTS = ("video-segments", r"^([^#\s].*\.ts)[ \t\r]*$", True, True)
    SUBTITLE_SEGMENTS = (
        "subtitle-segments",
        r"^([^#\s].*\.vtt)[ \t\r]*$",
        False,
        True,
    )

    def __init__(self, label: str, pattern: str, required: bool, all_matches: bool):
        self.label = label
        self.pattern = re.compile(pattern, re.MULTILINE)
        self.required = required
        self.all_matches = all_matches


def extract_uris(text: str, grammar: Grammar) -> list[str]:
    """Returns the raw references matched by `grammar`, in manifest order."""
    if grammar.all_matches:
        return [m.group(1) for m in grammar.pattern.finditer(text)]
    match = grammar.pattern.search(text)
    return [match.group(1)] if match else []


def resolve_uris(uris: list[str], base_url: str) -> list[str]:
    """Resolves possibly-relative references against the manifest's own URL."""
    return [urljoin(base_url, uri) for uri in uris]


def parse_manifest(text: str, grammar: Grammar, base_url: str) -> list[str]:
    """
    Extracts and resolves the references `grammar` describes.

    Raises:
        ManifestParseError: If the grammar is required and nothing matched.
    """
    uris = extract_uris(text, grammar)
    if grammar.required and not uris:
        raise ManifestParseError(
            f"No {grammar.label} reference found in manifest from {base_url}"
        )
    return resolve_uris(uris, base_url)
