"""Content fingerprints used for change detection."""

from __future__ import annotations

import hashlib


def generate_content_hash(content: str | bytes) -> str:
    """Return the SHA-256 hex digest of *content* (str is UTF-8 encoded)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()
