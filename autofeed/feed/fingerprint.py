from __future__ import annotations

import hashlib
from collections.abc import Iterable


def message_fingerprint(message_ids: Iterable[int]) -> str:
    """SHA-256 hex digest of the numerically sorted, comma-joined id set."""
    ids = sorted({int(i) for i in message_ids})
    return hashlib.sha256(",".join(str(i) for i in ids).encode("utf-8")).hexdigest()
