"""
Manifest Layer.

This package extracts references from HLS manifests and rewrites downloaded
manifests so they resolve against the local mirror.
"""

from .parser import Grammar, extract_uris, parse_manifest, resolve_uris
from .rewriter import rewrite_manifest, strip_schemes

__all__ = [
    "Grammar",
    "extract_uris",
    "parse_manifest",
    "resolve_uris",
    "rewrite_manifest",
    "strip_schemes",
]
