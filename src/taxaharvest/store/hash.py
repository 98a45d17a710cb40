"""Content hashing for cached payloads.

The digest is the single source of truth for whether a re-fetched payload
changed; timestamps alone never decide it.
"""

import hashlib


def compute_content_hash(payload: str | bytes) -> str:
    """Compute the SHA-256 hex digest of a payload.

    Strings are hashed as UTF-8, so a JSON or HTML body hashes the same
    whether the caller holds the raw bytes or the decoded text.

    Args:
        payload: Canonical payload text or bytes.

    Returns:
        64-character lowercase hex digest.

    Examples:
        >>> compute_content_hash("")
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hashlib.sha256(data).hexdigest()
