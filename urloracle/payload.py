"""
Attestation payload model.

An attestation payload is the signed content of one observation:

    {
      "schema_version": 2,
      "commit_sha": "<job_workflow_sha claim>",
      "timestamp": "<iat claim as RFC 3339 UTC>",
      "url": "<observed resource>",
      "content": "<base64 of the fetched bytes>",
      "content_digest": "<sha256 hex of content>",
      "content_size": <int>,
      "previous_attestation_digest": "<sha256 hex>" | null
    }

The payload digest is SHA-256 over the canonical serialization of the
payload for its schema version. The same function is used when signing
and when verifying; any change to the field set or the encoding must come
with a new schema version so that older attestations keep verifying.

Schema versions:
  - v2 (current): sorted keys, compact separators, digests as hex.
  - v1 (legacy):  no "schema_version" key; fixed declaration field order,
                  byte fields as base64 (content is "" when empty, the
                  optional fields are null when absent), an embedded
                  issuer key set ("jwks"), the chain link named
                  "prev_attestation_digest", HTML-safe escaping and
                  4-digit unicode escapes for backspace and form feed.

content_digest and content_size are always recomputed from content when a
payload is built. A parsed payload keeps whatever the file says so that
the verifier can detect a mismatch.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from collections import OrderedDict
from typing import Any, Dict, Mapping, Optional

from .errors import AttestationFormatError
from .utils import (
    b64decode_str,
    b64encode_str,
    canonical_json_bytes,
    hex_to_bytes,
    is_hex_string,
    secure_compare_bytes,
    sha256_digest,
)

logger = logging.getLogger(__name__)

SCHEMA_V1 = 1
SCHEMA_V2 = 2
CURRENT_SCHEMA_VERSION = SCHEMA_V2
SUPPORTED_SCHEMA_VERSIONS = frozenset({SCHEMA_V1, SCHEMA_V2})

DIGEST_SIZE = 32

# Legacy (v1) payload field order; the digest depends on it.
_V1_FIELD_ORDER = (
    "commit_sha",
    "timestamp",
    "url",
    "content",
    "content_digest",
    "content_size",
    "jwks",
    "prev_attestation_digest",
)

_V2_FIELDS = frozenset(
    {
        "schema_version",
        "commit_sha",
        "timestamp",
        "url",
        "content",
        "content_digest",
        "content_size",
        "previous_attestation_digest",
    }
)

_HTML_SAFE_ESCAPES = (
    ("&", "\\u0026"),
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)

# Backspace and form feed use \u escapes, not the short \b / \f forms.
# An escape starts at a backslash preceded by an even run of backslashes.
_SHORT_CONTROL_ESCAPE = re.compile(r"(?<!\\)((?:\\\\)*)\\([bf])")
_LONG_CONTROL_ESCAPES = {"b": "\\u0008", "f": "\\u000c"}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AttestationPayload:
    commit_sha: str
    timestamp: str
    url: str
    content: bytes
    content_digest: bytes
    content_size: int
    previous_attestation_digest: Optional[bytes] = None
    schema_version: int = CURRENT_SCHEMA_VERSION
    # Issuer key set snapshot, only carried by legacy v1 payloads.
    jwks: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.schema_version == SCHEMA_V1:
            return _v1_to_dict(self)
        if self.schema_version == SCHEMA_V2:
            return _v2_to_dict(self)
        raise AttestationFormatError(f"unsupported payload schema_version: {self.schema_version!r}")

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "AttestationPayload":
        if not isinstance(obj, Mapping):
            raise AttestationFormatError("payload must be a JSON object")
        if "schema_version" in obj:
            version = obj.get("schema_version")
            if version == SCHEMA_V2 and not isinstance(version, bool):
                return _v2_from_dict(obj)
            raise AttestationFormatError(f"unsupported payload schema_version: {version!r}")
        return _v1_from_dict(obj)

    def canonical_bytes(self) -> bytes:
        """Exact byte string that is hashed (and therefore signed)."""
        if self.schema_version == SCHEMA_V1:
            data = json.dumps(
                _v1_to_dict(self),
                separators=(",", ":"),
                ensure_ascii=False,
            )
            for raw, escaped in _HTML_SAFE_ESCAPES:
                data = data.replace(raw, escaped)
            data = _SHORT_CONTROL_ESCAPE.sub(lambda m: m.group(1) + _LONG_CONTROL_ESCAPES[m.group(2)], data)
            return data.encode("utf-8")
        return canonical_json_bytes(self.to_dict())

    def digest(self) -> bytes:
        return payload_digest(self)

    @property
    def content_digest_hex(self) -> str:
        return self.content_digest.hex()


@dataclasses.dataclass(frozen=True)
class Attestation:
    """
    Persisted unit: the payload, the opaque identity token and the signature
    over the payload digest. Created once by the builder, read-only after.
    """

    payload: AttestationPayload
    identity_token: Any
    signature: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload.to_dict(),
            "identity_token": self.identity_token,
            "signature": b64encode_str(self.signature),
        }

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Attestation":
        if not isinstance(obj, Mapping):
            raise AttestationFormatError("attestation must be a JSON object")
        if "payload" not in obj:
            raise AttestationFormatError("attestation is missing 'payload'")
        payload = AttestationPayload.from_dict(obj["payload"])

        # Legacy files name the token "pk_token".
        if "identity_token" in obj:
            token = obj["identity_token"]
        elif "pk_token" in obj:
            token = obj["pk_token"]
        else:
            raise AttestationFormatError("attestation is missing 'identity_token'")
        if token is None:
            raise AttestationFormatError("attestation identity_token is null")

        sig_raw = obj.get("signature")
        try:
            signature = b64decode_str(sig_raw)
        except ValueError as e:
            raise AttestationFormatError(f"attestation signature: {e}") from e
        return cls(payload=payload, identity_token=token, signature=signature)


@dataclasses.dataclass(frozen=True)
class AttestationDetails:
    """
    Lightweight chain pointer: the digest of an attestation payload and a
    locator for where the full attestation lives (artifact URL, path, ...).
    """

    digest: bytes
    artifact_locator: str

    def to_dict(self) -> Dict[str, Any]:
        return {"digest": self.digest.hex(), "artifact_locator": self.artifact_locator}

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "AttestationDetails":
        if not isinstance(obj, Mapping):
            raise AttestationFormatError("chain pointer must be a JSON object")
        digest = obj.get("digest")
        if not is_hex_string(digest, min_len=DIGEST_SIZE * 2) or len(digest) != DIGEST_SIZE * 2:
            raise AttestationFormatError("chain pointer digest must be a sha256 hex string")
        locator = obj.get("artifact_locator")
        if not isinstance(locator, str):
            raise AttestationFormatError("chain pointer artifact_locator must be a string")
        return cls(digest=bytes.fromhex(digest), artifact_locator=locator)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def build_payload(
    timestamp: str,
    commit_sha: str,
    url: str,
    content: bytes,
    previous_digest: Optional[bytes] = None,
    *,
    schema_version: int = CURRENT_SCHEMA_VERSION,
    jwks: Optional[bytes] = None,
) -> AttestationPayload:
    """
    Build a payload, computing content_digest and content_size from `content`.

    A caller-supplied digest is never used here; the only way to get one into
    a payload is to hash the bytes.
    """
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise ValueError(f"unsupported payload schema_version: {schema_version!r}")
    if not isinstance(content, (bytes, bytearray)):
        raise TypeError("content must be bytes")
    if previous_digest and len(previous_digest) != DIGEST_SIZE:
        raise ValueError("previous_digest must be a 32-byte sha256 digest")
    if schema_version == SCHEMA_V2 and jwks is not None:
        raise ValueError("jwks is only carried by legacy v1 payloads")

    data = bytes(content)
    return AttestationPayload(
        commit_sha=str(commit_sha),
        timestamp=str(timestamp),
        url=str(url),
        content=data,
        content_digest=sha256_digest(data),
        content_size=len(data),
        previous_attestation_digest=bytes(previous_digest) if previous_digest else None,
        schema_version=schema_version,
        jwks=jwks,
    )


def rebuild_payload(stored: AttestationPayload) -> AttestationPayload:
    """
    Rebuild a fresh payload from the visible fields of a stored one, using the
    rules of the stored schema version. Digest and size come from content.
    """
    return build_payload(
        stored.timestamp,
        stored.commit_sha,
        stored.url,
        stored.content,
        stored.previous_attestation_digest,
        schema_version=stored.schema_version,
        jwks=stored.jwks,
    )


def payload_digest(payload: AttestationPayload) -> bytes:
    """SHA-256 over the canonical serialization of `payload`."""
    return sha256_digest(payload.canonical_bytes())


def attestation_to_dict(attestation: Attestation) -> Dict[str, Any]:
    return attestation.to_dict()


def attestation_from_dict(obj: Mapping[str, Any]) -> Attestation:
    return Attestation.from_dict(obj)


def load_attestation(path: str) -> Attestation:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except OSError as e:
        raise AttestationFormatError(f"failed to read attestation file {path}: {e}") from e
    except ValueError as e:
        raise AttestationFormatError(f"failed to parse attestation file {path}: {e}") from e
    return Attestation.from_dict(obj)


def save_attestation(attestation: Attestation, path: str) -> None:
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    data = json.dumps(attestation.to_dict(), indent=2, ensure_ascii=False)
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)
        f.write("\n")


def check_for_change(new_digest: bytes, previous_attestation_file: Optional[str]) -> bool:
    """
    Decide whether content changed since the previous attestation.

    Returns True ("changed") whenever there is no usable previous record:
    no file given, file missing, unreadable or malformed. Returns False only
    when the previous content_digest equals `new_digest` exactly.
    """
    if not previous_attestation_file:
        logger.debug("no previous attestation supplied; treating content as changed")
        return True
    try:
        previous = load_attestation(previous_attestation_file)
    except AttestationFormatError as e:
        logger.info("previous attestation unusable; treating content as changed: %s", e)
        return True
    return not secure_compare_bytes(previous.payload.content_digest, new_digest)


# ---------------------------------------------------------------------------
# Schema-specific encoding
# ---------------------------------------------------------------------------


def _v2_to_dict(p: AttestationPayload) -> Dict[str, Any]:
    return {
        "schema_version": SCHEMA_V2,
        "commit_sha": p.commit_sha,
        "timestamp": p.timestamp,
        "url": p.url,
        "content": b64encode_str(p.content),
        "content_digest": p.content_digest.hex(),
        "content_size": int(p.content_size),
        "previous_attestation_digest": (
            p.previous_attestation_digest.hex() if p.previous_attestation_digest else None
        ),
    }


def _v1_to_dict(p: AttestationPayload) -> "OrderedDict[str, Any]":
    def _b(v: Optional[bytes]) -> Optional[str]:
        return b64encode_str(v) if v else None

    values = {
        "commit_sha": p.commit_sha,
        "timestamp": p.timestamp,
        "url": p.url,
        "content": b64encode_str(p.content),
        "content_digest": b64encode_str(p.content_digest),
        "content_size": int(p.content_size),
        "jwks": _b(p.jwks),
        "prev_attestation_digest": _b(p.previous_attestation_digest),
    }
    return OrderedDict((k, values[k]) for k in _V1_FIELD_ORDER)


def _require_str(obj: Mapping[str, Any], key: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str):
        raise AttestationFormatError(f"payload field {key!r} must be a string")
    return v


def _require_int(obj: Mapping[str, Any], key: str) -> int:
    v = obj.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise AttestationFormatError(f"payload field {key!r} must be a non-negative integer")
    return v


def _optional_b64(obj: Mapping[str, Any], key: str) -> Optional[bytes]:
    v = obj.get(key)
    if v is None:
        return None
    try:
        return b64decode_str(v)
    except ValueError as e:
        raise AttestationFormatError(f"payload field {key!r}: {e}") from e


def _v2_from_dict(obj: Mapping[str, Any]) -> AttestationPayload:
    unknown = set(obj.keys()) - _V2_FIELDS
    if unknown:
        raise AttestationFormatError(f"unknown payload fields: {sorted(unknown)}")

    content = _optional_b64(obj, "content")
    if content is None:
        raise AttestationFormatError("payload field 'content' is required")

    digest_hex = _require_str(obj, "content_digest")
    try:
        content_digest = hex_to_bytes(digest_hex)
    except ValueError as e:
        raise AttestationFormatError(f"payload field 'content_digest': {e}") from e

    prev_raw = obj.get("previous_attestation_digest")
    previous: Optional[bytes] = None
    if prev_raw not in (None, ""):
        if not is_hex_string(prev_raw) or len(prev_raw) != DIGEST_SIZE * 2:
            raise AttestationFormatError("previous_attestation_digest must be a sha256 hex string")
        previous = bytes.fromhex(prev_raw)

    return AttestationPayload(
        commit_sha=_require_str(obj, "commit_sha"),
        timestamp=_require_str(obj, "timestamp"),
        url=_require_str(obj, "url"),
        content=content,
        content_digest=content_digest,
        content_size=_require_int(obj, "content_size"),
        previous_attestation_digest=previous,
        schema_version=SCHEMA_V2,
    )


def _v1_from_dict(obj: Mapping[str, Any]) -> AttestationPayload:
    unknown = set(obj.keys()) - set(_V1_FIELD_ORDER)
    if unknown:
        raise AttestationFormatError(f"unknown payload fields: {sorted(unknown)}")
    return AttestationPayload(
        commit_sha=_require_str(obj, "commit_sha"),
        timestamp=_require_str(obj, "timestamp"),
        url=_require_str(obj, "url"),
        content=_optional_b64(obj, "content") or b"",
        content_digest=_optional_b64(obj, "content_digest") or b"",
        content_size=_require_int(obj, "content_size"),
        previous_attestation_digest=_optional_b64(obj, "prev_attestation_digest"),
        schema_version=SCHEMA_V1,
        jwks=_optional_b64(obj, "jwks"),
    )


__all__ = [
    "SCHEMA_V1",
    "SCHEMA_V2",
    "CURRENT_SCHEMA_VERSION",
    "AttestationPayload",
    "Attestation",
    "AttestationDetails",
    "build_payload",
    "rebuild_payload",
    "payload_digest",
    "attestation_to_dict",
    "attestation_from_dict",
    "load_attestation",
    "save_attestation",
    "check_for_change",
]
