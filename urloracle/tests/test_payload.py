# urloracle/tests/test_payload.py
import base64
import dataclasses
import hashlib
import json

import pytest

from urloracle.errors import AttestationFormatError
from urloracle.payload import (
    SCHEMA_V1,
    SCHEMA_V2,
    Attestation,
    AttestationPayload,
    build_payload,
    check_for_change,
    load_attestation,
    payload_digest,
    rebuild_payload,
    save_attestation,
)

TS = "2024-01-01T00:00:00Z"
SHA = "abc123"
URL = "https://example.com/a.json"
PREV = hashlib.sha256(b"previous").digest()


def _payload(**kw):
    args = dict(timestamp=TS, commit_sha=SHA, url=URL, content=b'{"v":1}', previous_digest=None)
    args.update(kw)
    return build_payload(**args)


def test_build_computes_digest_and_size():
    p = _payload(content=b"hello")
    assert p.content_digest == hashlib.sha256(b"hello").digest()
    assert p.content_size == 5
    assert p.previous_attestation_digest is None
    assert p.schema_version == SCHEMA_V2

def test_digest_is_deterministic():
    a = _payload(previous_digest=PREV)
    b = _payload(previous_digest=PREV)
    assert a.canonical_bytes() == b.canonical_bytes()
    assert payload_digest(a) == payload_digest(b) == a.digest()
    assert len(payload_digest(a)) == 32

def test_canonical_encoding_is_sorted_compact_json():
    p = _payload(content=b"hi")
    raw = p.canonical_bytes().decode("utf-8")
    obj = json.loads(raw)
    assert list(obj.keys()) == sorted(obj.keys())
    assert ", " not in raw and ": " not in raw
    assert obj["content"] == base64.b64encode(b"hi").decode()
    assert obj["content_digest"] == hashlib.sha256(b"hi").hexdigest()
    assert obj["previous_attestation_digest"] is None
    assert obj["schema_version"] == 2

@pytest.mark.parametrize(
    "field,value",
    [
        ("commit_sha", "def456"),
        ("timestamp", "2024-01-01T00:00:01Z"),
        ("url", "https://example.com/b.json"),
        ("content_size", 8),
        ("content_digest", hashlib.sha256(b"other").digest()),
        ("previous_attestation_digest", PREV),
    ],
)
def test_every_field_changes_digest(field, value):
    base = _payload()
    changed = dataclasses.replace(base, **{field: value})
    assert payload_digest(changed) != payload_digest(base)

def test_content_change_changes_digest():
    assert payload_digest(_payload(content=b'{"v":1}')) != payload_digest(_payload(content=b'{"v":2}'))

def test_empty_previous_digest_means_no_link():
    assert _payload(previous_digest=b"").previous_attestation_digest is None
    assert payload_digest(_payload(previous_digest=b"")) == payload_digest(_payload())

def test_rejects_malformed_previous_digest():
    with pytest.raises(ValueError):
        _payload(previous_digest=b"short")

def test_rejects_non_bytes_content():
    with pytest.raises(TypeError):
        _payload(content="text")

def test_rebuild_recomputes_digest_and_size():
    good = _payload(content=b"abc")
    forged = dataclasses.replace(good, content_digest=b"\x00" * 32, content_size=99)
    fresh = rebuild_payload(forged)
    assert fresh.content_digest == good.content_digest
    assert fresh.content_size == 3
    assert payload_digest(fresh) == payload_digest(good)

def test_save_and_load_keep_digest(tmp_path):
    p = _payload(previous_digest=PREV)
    att = Attestation(payload=p, identity_token={"op_token": "a.b.c", "cic": {}}, signature=b"sig")
    path = tmp_path / "out" / "attestation.json"
    save_attestation(att, str(path))
    loaded = load_attestation(str(path))
    assert loaded.payload == p
    assert payload_digest(loaded.payload) == payload_digest(p)
    assert loaded.signature == b"sig"
    assert json.loads(path.read_text())["signature"] == base64.b64encode(b"sig").decode()

def test_load_rejects_garbage(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json")
    with pytest.raises(AttestationFormatError):
        load_attestation(str(path))
    with pytest.raises(AttestationFormatError):
        load_attestation(str(tmp_path / "missing.json"))

def test_unknown_schema_version_rejected():
    obj = _payload().to_dict()
    obj["schema_version"] = 3
    with pytest.raises(AttestationFormatError):
        AttestationPayload.from_dict(obj)

def test_unknown_payload_field_rejected():
    obj = _payload().to_dict()
    obj["extra"] = 1
    with pytest.raises(AttestationFormatError):
        AttestationPayload.from_dict(obj)

def test_attestation_accepts_legacy_token_key():
    att = Attestation.from_dict(
        {"payload": _payload().to_dict(), "pk_token": {"op_token": "a.b.c"}, "signature": "c2ln"}
    )
    assert att.identity_token == {"op_token": "a.b.c"}
    assert att.signature == b"sig"


# ---------------------------------------------------------------------------
# Legacy v1 payloads
# ---------------------------------------------------------------------------


def _b64(data):
    return base64.b64encode(data).decode("ascii")


def test_legacy_payload_hash_uses_fixed_order_and_html_escaping():
    url = "https://example.com/?a=1&b=<2>"
    p = build_payload(TS, SHA, url, b"hi", schema_version=SCHEMA_V1)
    expected = (
        '{"commit_sha":"abc123","timestamp":"2024-01-01T00:00:00Z",'
        '"url":"https://example.com/?a=1\\u0026b=\\u003c2\\u003e",'
        f'"content":"{_b64(b"hi")}","content_digest":"{_b64(hashlib.sha256(b"hi").digest())}",'
        '"content_size":2,"jwks":null,"prev_attestation_digest":null}'
    )
    assert p.canonical_bytes() == expected.encode("utf-8")
    assert payload_digest(p) == hashlib.sha256(expected.encode("utf-8")).digest()

def test_legacy_payload_encodes_empty_content_as_empty_string():
    p = build_payload(TS, SHA, URL, b"", schema_version=SCHEMA_V1)
    raw = p.canonical_bytes().decode("utf-8")
    assert '"content":"",' in raw
    assert '"jwks":null,"prev_attestation_digest":null}' in raw

def test_legacy_payload_uses_long_escapes_for_backspace_and_form_feed():
    url = "https://example.com/\b\f\n\\b"
    raw = build_payload(TS, SHA, url, b"x", schema_version=SCHEMA_V1).canonical_bytes().decode("utf-8")
    assert '"url":"https://example.com/\\u0008\\u000c\\n\\\\b"' in raw

def test_legacy_payload_parses_without_schema_version():
    stored = {
        "commit_sha": SHA,
        "timestamp": TS,
        "url": URL,
        "content": _b64(b"hi"),
        "content_digest": _b64(hashlib.sha256(b"hi").digest()),
        "content_size": 2,
        "jwks": _b64(b'{"keys":[]}'),
        "prev_attestation_digest": _b64(PREV),
    }
    p = AttestationPayload.from_dict(stored)
    assert p.schema_version == SCHEMA_V1
    assert p.previous_attestation_digest == PREV
    assert p.jwks == b'{"keys":[]}'
    assert p.to_dict() == stored
    assert payload_digest(rebuild_payload(p)) == payload_digest(p)

def test_v2_payload_cannot_carry_jwks():
    with pytest.raises(ValueError):
        build_payload(TS, SHA, URL, b"x", jwks=b"{}")


# ---------------------------------------------------------------------------
# check_for_change
# ---------------------------------------------------------------------------


def _saved(tmp_path, content):
    att = Attestation(payload=_payload(content=content), identity_token={}, signature=b"s")
    path = tmp_path / "previous.json"
    save_attestation(att, str(path))
    return str(path)


def test_change_when_no_previous_file():
    digest = hashlib.sha256(b"x").digest()
    assert check_for_change(digest, None) is True
    assert check_for_change(digest, "") is True

def test_change_when_previous_missing_or_malformed(tmp_path):
    digest = hashlib.sha256(b"x").digest()
    assert check_for_change(digest, str(tmp_path / "nope.json")) is True
    bad = tmp_path / "bad.json"
    bad.write_text('{"payload": 1}')
    assert check_for_change(digest, str(bad)) is True

def test_no_change_when_digest_matches(tmp_path):
    path = _saved(tmp_path, b'{"v":1}')
    assert check_for_change(hashlib.sha256(b'{"v":1}').digest(), path) is False

def test_change_when_digest_differs(tmp_path):
    path = _saved(tmp_path, b'{"v":1}')
    assert check_for_change(hashlib.sha256(b'{"v":2}').digest(), path) is True
