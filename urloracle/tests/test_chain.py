# urloracle/tests/test_chain.py
import base64
import dataclasses
import json
import os
import stat

import pytest
from conftest import URL, WORKFLOW_REF

from urloracle.builder import AttestationBuilder
from urloracle.chain import (
    ChainLinker,
    DirectoryArtifactStore,
    Found,
    LinkError,
    LookupResult,
    LookupStatus,
    NotFound,
    ScriptArtifactStore,
    parse_workflow_ref,
    read_chain_pointer,
    verify_chain,
    write_chain_pointer,
)
from urloracle.errors import WorkflowRefError
from urloracle.metrics import REGISTRY
from urloracle.payload import AttestationDetails, payload_digest, save_attestation


# ---------------------------------------------------------------------------
# Workflow reference parsing
# ---------------------------------------------------------------------------


def test_parse_workflow_ref():
    ident = parse_workflow_ref(WORKFLOW_REF)
    assert (ident.owner, ident.repo, ident.workflow_file, ident.branch) == ("acme", "oracle", "attest.yml", "main")
    assert ident.repository == "acme/oracle"
    assert ident.ref() == WORKFLOW_REF

def test_parse_workflow_ref_branch_with_slashes():
    ident = parse_workflow_ref("acme/oracle/.github/workflows/attest.yaml@refs/heads/release/v1")
    assert ident.branch == "release/v1"
    assert ident.workflow_file == "attest.yaml"

@pytest.mark.parametrize(
    "ref",
    [
        "",
        "acme/oracle/.github/workflows/attest.yml",
        "acme/oracle/.github/workflows/attest.yml@refs/heads/main@x",
        "acme/.github/workflows/attest.yml@refs/heads/main",
        "acme/oracle/extra/.github/workflows/attest.yml@refs/heads/main",
        "acme/oracle/.gitlab/workflows/attest.yml@refs/heads/main",
        "acme/oracle/.github/workflows/attest.sh@refs/heads/main",
        "acme/oracle/.github/workflows/attest.yml@refs/tags/v1",
        "acme/oracle/.github/workflows/attest.yml@refs/heads/",
    ],
)
def test_parse_workflow_ref_rejects_malformed(ref):
    with pytest.raises(WorkflowRefError):
        parse_workflow_ref(ref)

def test_lookup_status_from_exit_code():
    assert LookupStatus.from_exit_code(0) is LookupStatus.SUCCESS
    assert LookupStatus.from_exit_code(2) is LookupStatus.NOT_FOUND
    assert LookupStatus.from_exit_code(1) is LookupStatus.ERROR
    assert LookupStatus.from_exit_code(127) is LookupStatus.ERROR


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------


class StaticStore:
    def __init__(self, result, source=None):
        self.result = result
        self.source = source
        self.calls = []

    def fetch_latest(self, identity, destination):
        self.calls.append((identity, destination))
        if self.source is not None:
            with open(self.source, "rb") as src, open(destination, "wb") as dst:
                dst.write(src.read())
        return self.result


def _found_count():
    return REGISTRY.get_sample_value("url_oracle_chain_lookups_total", {"status": "found"}) or 0.0


def _store_with(tmp_path, attestation):
    store = DirectoryArtifactStore(str(tmp_path / "artifacts"))
    path = store.path_for(parse_workflow_ref(WORKFLOW_REF))
    save_attestation(attestation, path)
    return store


def test_linker_found_in_directory_store(tmp_path, build):
    prev = build()
    store = _store_with(tmp_path, prev)
    before = _found_count()
    result = ChainLinker(store).link(WORKFLOW_REF)
    assert isinstance(result, Found)
    assert result.details.digest == payload_digest(prev.payload)
    assert result.details.artifact_locator.endswith("attestation.json")
    assert result.attestation.payload == prev.payload
    assert _found_count() == before + 1

def test_linker_keeps_previous_file(tmp_path, build):
    store = _store_with(tmp_path, build())
    keep = tmp_path / "work" / "previous.json"
    result = ChainLinker(store, previous_file=str(keep)).link(WORKFLOW_REF)
    assert isinstance(result, Found)
    assert keep.exists()

def test_linker_clears_stale_previous_file(tmp_path):
    (tmp_path / "artifacts").mkdir()
    keep = tmp_path / "work" / "previous.json"
    keep.parent.mkdir()
    keep.write_text('{"stale": true}')
    result = ChainLinker(DirectoryArtifactStore(str(tmp_path / "artifacts")), previous_file=str(keep)).link(WORKFLOW_REF)
    assert isinstance(result, NotFound)
    assert not keep.exists()

    keep.write_text('{"stale": true}')
    result = ChainLinker(StaticStore(LookupResult(LookupStatus.ERROR)), previous_file=str(keep)).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)
    assert not keep.exists()

def test_linker_not_found_when_no_artifact(tmp_path):
    (tmp_path / "artifacts").mkdir()
    result = ChainLinker(DirectoryArtifactStore(str(tmp_path / "artifacts"))).link(WORKFLOW_REF)
    assert isinstance(result, NotFound)

def test_linker_error_when_store_unavailable(tmp_path):
    result = ChainLinker(DirectoryArtifactStore(str(tmp_path / "missing"))).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)

def test_linker_error_on_malformed_ref_never_not_found(tmp_path):
    store = StaticStore(LookupResult(LookupStatus.NOT_FOUND))
    result = ChainLinker(store).link("acme/oracle@refs/heads/main")
    assert isinstance(result, LinkError)
    assert isinstance(result.error, WorkflowRefError)
    assert store.calls == []

def test_linker_error_on_store_failure():
    result = ChainLinker(StaticStore(LookupResult(LookupStatus.ERROR, message="401"))).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)
    assert "401" in result.cause

def test_linker_error_on_unreadable_previous(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{}")
    result = ChainLinker(StaticStore(LookupResult(LookupStatus.SUCCESS), source=str(bad))).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)

def test_linker_rejects_previous_from_other_workflow(tmp_path, build, issuer):
    issuer.claims["job_workflow_ref"] = "acme/other/.github/workflows/attest.yml@refs/heads/main"
    other = build()
    src = tmp_path / "other.json"
    save_attestation(other, str(src))
    result = ChainLinker(StaticStore(LookupResult(LookupStatus.SUCCESS), source=str(src))).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)
    assert "acme/other" in result.cause

def test_linker_survives_out_of_range_iat_in_previous(tmp_path, build):
    prev = build()
    claims = {"iat": 10**20, "job_workflow_sha": "a" * 40, "job_workflow_ref": WORKFLOW_REF}
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    token = dict(prev.identity_token, op_token=f"e30.{body}.c2ln")
    src = tmp_path / "prev.json"
    save_attestation(dataclasses.replace(prev, identity_token=token), str(src))
    result = ChainLinker(StaticStore(LookupResult(LookupStatus.SUCCESS), source=str(src))).link(WORKFLOW_REF)
    assert isinstance(result, Found)
    assert result.details.digest == payload_digest(prev.payload)

def test_linker_without_store_is_not_found():
    assert isinstance(ChainLinker().link(WORKFLOW_REF), NotFound)

def test_chain_pointer_short_circuits_download(tmp_path):
    details = AttestationDetails(digest=b"\x11" * 32, artifact_locator="https://example.com/run/1")
    pointer = tmp_path / "pointer.json"
    write_chain_pointer(details, str(pointer))
    assert read_chain_pointer(str(pointer)) == details

    store = StaticStore(LookupResult(LookupStatus.ERROR))
    result = ChainLinker(store, pointer_file=str(pointer)).link(WORKFLOW_REF)
    assert isinstance(result, Found)
    assert result.details == details
    assert store.calls == []

def test_malformed_chain_pointer_is_error(tmp_path):
    pointer = tmp_path / "pointer.json"
    pointer.write_text('{"digest": "zz", "artifact_locator": "x"}')
    result = ChainLinker(pointer_file=str(pointer)).link(WORKFLOW_REF)
    assert isinstance(result, LinkError)


# ---------------------------------------------------------------------------
# Script-backed store
# ---------------------------------------------------------------------------

_SCRIPT = """#!/bin/sh
case "$3" in
  main) cp "$FIXTURE" "$4"; echo "artifact_locator=https://example.com/runs/7"; exit 0 ;;
  empty) echo "no successful runs" >&2; exit 2 ;;
  *) echo "gh: authentication required" >&2; exit 1 ;;
esac
"""


@pytest.fixture
def script_store(tmp_path, build):
    fixture = tmp_path / "fixture.json"
    save_attestation(build(), str(fixture))
    script = tmp_path / "download.sh"
    script.write_text(_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    env = {"FIXTURE": str(fixture), "PATH": os.environ.get("PATH", "/usr/bin:/bin")}
    return ScriptArtifactStore(str(script), env=env, interpreter="sh")


def test_script_store_exit_codes(tmp_path, script_store):
    dest = str(tmp_path / "prev.json")
    found = script_store.fetch_latest(parse_workflow_ref(WORKFLOW_REF), dest)
    assert found.status is LookupStatus.SUCCESS
    assert found.locator == "https://example.com/runs/7"
    assert os.path.exists(dest)

    empty = script_store.fetch_latest(
        parse_workflow_ref("acme/oracle/.github/workflows/attest.yml@refs/heads/empty"), dest
    )
    assert empty.status is LookupStatus.NOT_FOUND

    failed = script_store.fetch_latest(
        parse_workflow_ref("acme/oracle/.github/workflows/attest.yml@refs/heads/dev"), dest
    )
    assert failed.status is LookupStatus.ERROR
    assert "authentication" in failed.message

def test_script_store_through_linker(script_store):
    assert isinstance(ChainLinker(script_store).link(WORKFLOW_REF), Found)
    ref = "acme/oracle/.github/workflows/attest.yml@refs/heads/empty"
    assert isinstance(ChainLinker(script_store).link(ref), NotFound)

def test_missing_script_is_error(tmp_path):
    store = ScriptArtifactStore(str(tmp_path / "nope.sh"))
    result = store.fetch_latest(parse_workflow_ref(WORKFLOW_REF), str(tmp_path / "x.json"))
    assert result.status is LookupStatus.ERROR


# ---------------------------------------------------------------------------
# Chain walk
# ---------------------------------------------------------------------------


def _chain(tmp_path, fetcher, signer, contents):
    store = DirectoryArtifactStore(str(tmp_path / "artifacts"))
    path = store.path_for(parse_workflow_ref(WORKFLOW_REF))
    builder = AttestationBuilder(fetcher, signer, ChainLinker(store))
    out = []
    for content in contents:
        fetcher.content = content
        att = builder.build(URL, skip_chain_link=not out)
        save_attestation(att, path)
        out.append(att)
    return out


def test_verify_chain_intact(tmp_path, fetcher, signer):
    chain = _chain(tmp_path, fetcher, signer, [b"1", b"2", b"3"])
    assert chain[0].payload.previous_attestation_digest is None
    assert chain[1].payload.previous_attestation_digest == payload_digest(chain[0].payload)
    report = verify_chain(chain, require_genesis=True)
    assert report.ok, report.errors
    assert report.checked == 3

def test_verify_chain_reports_every_broken_link(tmp_path, fetcher, signer):
    chain = _chain(tmp_path, fetcher, signer, [b"1", b"2", b"3"])
    tampered = dataclasses.replace(chain[1], payload=dataclasses.replace(chain[1].payload, content=b"X"))
    report = verify_chain([chain[0], tampered, chain[2]])
    assert not report.ok
    assert len(report.errors) == 1
    assert "attestation 2" in report.errors[0]

    report = verify_chain([chain[0], chain[2]])
    assert not report.ok

def test_verify_chain_genesis_and_empty(tmp_path, fetcher, signer):
    chain = _chain(tmp_path, fetcher, signer, [b"1", b"2"])
    assert verify_chain(chain[1:]).ok
    assert not verify_chain(chain[1:], require_genesis=True).ok
    assert not verify_chain([]).ok
