"""Content fingerprints and filename helpers for the artifact cache.

Normalized artifacts are addressed by a SHA-256 of the source bytes, so the
same upload under two different asset ids resolves to one cache entry.
"""

import hashlib
import os
import re

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
MAX_NAME_LENGTH = 160


def sanitize_name(value) -> str:
    """Make a value safe to embed in a filename.

    Anything outside ``[A-Za-z0-9._-]`` becomes ``_`` and the result is
    truncated to 160 characters. Empty input yields ``"asset"``.
    """
    text = value if isinstance(value, str) else str(value or "")
    return _UNSAFE_CHARS.sub("_", text)[:MAX_NAME_LENGTH] or "asset"


def compute_content_hash(file_path: str) -> str:
    """Compute SHA-256 of a file's full contents.

    Args:
        file_path: Path to the source media

    Returns:
        SHA-256 hex digest

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Media file not found: {file_path}")

    hasher = hashlib.sha256()

    with open(file_path, "rb") as f:
        # 64KB chunks keep memory flat for multi-GB sources
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)

    return hasher.hexdigest()


def artifact_suffix(content_hash: str, profile_tag: str, ext: str) -> str:
    """Owner-independent tail of an artifact filename, e.g. ``-<hash>-cfr24.mp4``."""
    return f"-{content_hash}-{profile_tag}{ext}"


def artifact_name(asset_id: str, content_hash: str, profile_tag: str, ext: str) -> str:
    """Deterministic cache filename: ``{asset}-{hash}-{tag}{ext}``."""
    return sanitize_name(asset_id) + artifact_suffix(content_hash, profile_tag, ext)


def asset_prefix(asset_id: str) -> str:
    """Filename prefix shared by every upload and artifact owned by an asset."""
    return f"{sanitize_name(asset_id)}-"
