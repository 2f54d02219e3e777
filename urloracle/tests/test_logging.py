# urloracle/tests/test_logging.py
import io
import json
import logging

from urloracle.logging import bind, configure_json_logging, context, reset, unbind


def _capture():
    buf = io.StringIO()
    configure_json_logging("DEBUG", stream=buf)
    return buf


def _lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line]


def test_json_envelope_with_bound_context():
    buf = _capture()
    bind(url="https://example.com/a.json", step="fetch")
    logging.getLogger("urloracle.test").info("downloaded %d bytes", 7)
    (evt,) = _lines(buf)
    assert evt["msg"] == "downloaded 7 bytes"
    assert evt["lvl"] == "INFO"
    assert evt["logger"] == "urloracle.test"
    assert evt["url"] == "https://example.com/a.json"
    assert evt["step"] == "fetch"
    assert evt["ts"].endswith("Z")

def test_bearer_material_is_redacted_and_content_dropped():
    buf = _capture()
    logging.getLogger("urloracle.test").info(
        "token issued",
        extra={"identity_token": {"op_token": "a.b.c"}, "content": b"secret", "content_size": 6},
    )
    (evt,) = _lines(buf)
    assert evt["meta"]["identity_token"] == "***"
    assert "content" not in evt["meta"]
    assert evt["meta"]["content_size"] == 6

def test_exceptions_are_recorded():
    buf = _capture()
    try:
        raise ValueError("boom")
    except ValueError:
        logging.getLogger("urloracle.test").exception("failed")
    (evt,) = _lines(buf)
    assert evt["exc_type"] == "ValueError"
    assert "boom" in evt["stack"]

def test_bind_unbind_reset():
    bind(commit_sha="abc", skipped=None)
    assert context() == {"commit_sha": "abc"}
    unbind("commit_sha")
    assert context() == {}
    bind(check="signature")
    reset()
    assert context() == {}
