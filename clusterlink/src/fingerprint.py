from __future__ import annotations

import base64
import json
from hashlib import sha256
from typing import Any


def _encode_value(value: Any) -> Any:
    """Make values that ``json`` cannot serialize hashable in a stable form."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=canonical_json)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Cannot fingerprint value of type {type(value).__name__}")


def canonical_json(payload: Any) -> str:
    """Serialize *payload* so that map key order never changes the output."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_encode_value,
    )


def fingerprint(payload: Any) -> str:
    """Return a base64 SHA-256 digest of the canonical form of *payload*.

    The same function is applied to ClientConfig ``spec`` maps and to Secret
    ``data`` maps.  ``None`` and empty payloads hash to fixed values that
    never collide with a non-empty payload.
    """
    digest = sha256(canonical_json(payload).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")
