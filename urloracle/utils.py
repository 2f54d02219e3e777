# FILE: urloracle/utils.py
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Canonical JSON + hashing helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to a canonical JSON string.

    Canonical JSON:
      - sort_keys=True for deterministic key ordering;
      - separators=(",", ":") for a compact, stable representation;
      - ensure_ascii=False to keep Unicode stable.

    NaN and infinities are rejected rather than emitted as non-standard JSON.
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=ensure_ascii,
        allow_nan=False,
    )


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Encodings
# ---------------------------------------------------------------------------


def b64encode_str(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode_str(value: str) -> bytes:
    """Strict standard base64 decode; raises ValueError on bad input."""
    if not isinstance(value, str):
        raise ValueError("base64 value must be a string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def hex_to_bytes(value: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError("hex value must be a string")
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise ValueError(f"invalid hex: {e}") from e


def is_hex_string(s: Any, *, min_len: int = 0) -> bool:
    """
    Check whether `s` is a hex string with at least `min_len` characters.
    """
    if not isinstance(s, str):
        return False
    if len(s) < min_len or len(s) % 2:
        return False
    try:
        bytes.fromhex(s)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------


def secure_compare_bytes(a: Optional[bytes], b: Optional[bytes]) -> bool:
    """Constant-time comparison; None only equals None."""
    if a is None or b is None:
        return a is None and b is None
    return hmac.compare_digest(bytes(a), bytes(b))


__all__ = [
    "canonical_json_dumps",
    "canonical_json_bytes",
    "sha256_digest",
    "sha256_hex",
    "b64encode_str",
    "b64decode_str",
    "b64url_nopad",
    "hex_to_bytes",
    "is_hex_string",
    "secure_compare_bytes",
]
