"""
Chain linking: find the most recent attestation of the same monitoring job
and carry its payload digest forward.

A monitoring job is identified by (owner, repo, workflow file, branch),
parsed from the job_workflow_ref claim of the *current* identity token.

Lookup outcomes are kept distinct:
  - Found     : a previous attestation (or chain pointer) exists;
  - NotFound  : no previous run / no artifact; expected on the first link;
  - LinkError : infrastructure or input failure. Callers must not treat this
                as NotFound, or the chain silently breaks.

Artifact stores talk across a process boundary with a closed set of exit
codes (LookupStatus): 0 found, 2 not found, anything else an error.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional, Protocol, Sequence, Union

from .errors import AttestationFormatError, ClaimError, WorkflowRefError
from .identity import extract_claims
from .metrics import CHAIN_LOOKUPS
from .payload import Attestation, AttestationDetails, load_attestation, payload_digest
from .utils import secure_compare_bytes

logger = logging.getLogger(__name__)

PREVIOUS_ATTESTATION_NAME = "previous_attestation.json"
ARTIFACT_FILE_NAME = "attestation.json"
_LOCATOR_PREFIX = "artifact_locator="
_HEADS_PREFIX = "refs/heads/"
_WORKFLOW_EXTS = (".yml", ".yaml")


# ---------------------------------------------------------------------------
# Workflow identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowIdentity:
    owner: str
    repo: str
    workflow_file: str
    branch: str

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def ref(self) -> str:
        return f"{self.owner}/{self.repo}/.github/workflows/{self.workflow_file}@{_HEADS_PREFIX}{self.branch}"


def parse_workflow_ref(ref: str) -> WorkflowIdentity:
    """
    Parse "<owner>/<repo>/.github/workflows/<file>@refs/heads/<branch>".

    The path must have exactly five segments and the ref must be a branch
    ref. Branch names may contain "/", but no empty segments.
    """
    if not isinstance(ref, str) or not ref:
        raise WorkflowRefError("workflow reference is empty")
    if ref.count("@") != 1:
        raise WorkflowRefError(f"workflow reference must contain exactly one '@': {ref!r}")

    path, git_ref = ref.split("@")
    segments = path.split("/")
    if len(segments) != 5 or any(not s for s in segments):
        raise WorkflowRefError(f"workflow path must have 5 segments: {path!r}")
    owner, repo, dot_github, workflows, workflow_file = segments
    if dot_github != ".github" or workflows != "workflows":
        raise WorkflowRefError(f"workflow path must be under .github/workflows: {path!r}")
    if not workflow_file.endswith(_WORKFLOW_EXTS):
        raise WorkflowRefError(f"workflow file must be .yml or .yaml: {workflow_file!r}")

    if not git_ref.startswith(_HEADS_PREFIX):
        raise WorkflowRefError(f"workflow ref must be a branch ref: {git_ref!r}")
    branch = git_ref[len(_HEADS_PREFIX):]
    if not branch or any(not s for s in branch.split("/")):
        raise WorkflowRefError(f"workflow branch is malformed: {git_ref!r}")

    return WorkflowIdentity(owner=owner, repo=repo, workflow_file=workflow_file, branch=branch)


# ---------------------------------------------------------------------------
# Artifact stores
# ---------------------------------------------------------------------------


class LookupStatus(enum.IntEnum):
    SUCCESS = 0
    ERROR = 1
    NOT_FOUND = 2

    @classmethod
    def from_exit_code(cls, code: int) -> "LookupStatus":
        if code == cls.SUCCESS:
            return cls.SUCCESS
        if code == cls.NOT_FOUND:
            return cls.NOT_FOUND
        return cls.ERROR


@dataclass(frozen=True)
class LookupResult:
    status: LookupStatus
    locator: str = ""
    message: str = ""


class ArtifactStore(Protocol):
    def fetch_latest(self, identity: WorkflowIdentity, destination: str) -> LookupResult:
        """Write the newest successful run's attestation to `destination`."""
        ...


class ScriptArtifactStore:
    """
    Runs an external download command:

        <script> <owner/repo> <workflow_file> <branch> <destination>

    and maps its exit code through LookupStatus. A stdout line of the form
    "artifact_locator=<url>" is used as the locator.
    """

    def __init__(
        self,
        script: str,
        *,
        caller_token: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: float = 300.0,
        interpreter: Optional[str] = None,
    ):
        self._script = script
        self._interpreter = interpreter
        self._caller_token = caller_token
        self._env = dict(env) if env is not None else None
        self._timeout = float(timeout_s)

    def _child_env(self) -> Optional[dict]:
        if self._env is None and not self._caller_token:
            return None
        env = dict(self._env) if self._env is not None else dict(os.environ)
        if self._caller_token:
            env["CALLER_TOKEN"] = self._caller_token
        return env

    def fetch_latest(self, identity: WorkflowIdentity, destination: str) -> LookupResult:
        argv = [self._script, identity.repository, identity.workflow_file, identity.branch, destination]
        if self._interpreter:
            argv.insert(0, self._interpreter)
        try:
            proc = subprocess.run(
                argv,
                env=self._child_env(),
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return LookupResult(LookupStatus.ERROR, message=f"{self._script} timed out after {self._timeout}s")
        except OSError as e:
            return LookupResult(LookupStatus.ERROR, message=f"failed to run {self._script}: {e}")

        status = LookupStatus.from_exit_code(proc.returncode)
        locator = ""
        for line in (proc.stdout or "").splitlines():
            if line.startswith(_LOCATOR_PREFIX):
                locator = line[len(_LOCATOR_PREFIX):].strip()
        if not locator:
            locator = f"github:{identity.ref()}"

        message = (proc.stderr or "").strip().splitlines()[-1:] if proc.stderr else []
        return LookupResult(
            status,
            locator=locator,
            message=message[0] if message else f"exit code {proc.returncode}",
        )


class DirectoryArtifactStore:
    """
    Local layout:  <root>/<owner>/<repo>/<workflow_file>/<branch>/attestation.json
    """

    def __init__(self, root: str):
        self._root = root

    def path_for(self, identity: WorkflowIdentity) -> str:
        return os.path.join(
            self._root,
            identity.owner,
            identity.repo,
            identity.workflow_file,
            *identity.branch.split("/"),
            ARTIFACT_FILE_NAME,
        )

    def fetch_latest(self, identity: WorkflowIdentity, destination: str) -> LookupResult:
        src = self.path_for(identity)
        if not os.path.isdir(self._root):
            return LookupResult(LookupStatus.ERROR, message=f"artifact directory {self._root} does not exist")
        if not os.path.exists(src):
            return LookupResult(LookupStatus.NOT_FOUND, locator=src, message="no attestation artifact")
        try:
            shutil.copyfile(src, destination)
        except OSError as e:
            return LookupResult(LookupStatus.ERROR, locator=src, message=str(e))
        return LookupResult(LookupStatus.SUCCESS, locator=os.path.abspath(src))


# ---------------------------------------------------------------------------
# Chain pointer file
# ---------------------------------------------------------------------------


def write_chain_pointer(details: AttestationDetails, path: str) -> None:
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(details.to_dict(), f, indent=2)
        f.write("\n")


def read_chain_pointer(path: str) -> AttestationDetails:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except OSError as e:
        raise AttestationFormatError(f"failed to read chain pointer {path}: {e}") from e
    except ValueError as e:
        raise AttestationFormatError(f"failed to parse chain pointer {path}: {e}") from e
    return AttestationDetails.from_dict(obj)


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Found:
    details: AttestationDetails
    attestation: Optional[Attestation] = None


@dataclass(frozen=True)
class NotFound:
    reason: str


@dataclass(frozen=True)
class LinkError:
    cause: str
    error: Optional[BaseException] = None


LinkResult = Union[Found, NotFound, LinkError]


class ChainLinker:
    """
    Resolves the previous link for a workflow reference.

    Sources, in order:
      1. pointer_file, when configured and present;
      2. store, downloading to previous_file (a temporary file by default).
    With neither source available the result is NotFound.
    """

    def __init__(
        self,
        store: Optional[ArtifactStore] = None,
        *,
        pointer_file: Optional[str] = None,
        previous_file: Optional[str] = None,
    ):
        self._store = store
        self._pointer_file = pointer_file
        self._previous_file = previous_file

    def link(self, workflow_ref: str) -> LinkResult:
        result = self._link(workflow_ref)
        if isinstance(result, Found):
            CHAIN_LOOKUPS.labels("found").inc()
            logger.info("previous attestation found", extra={"digest": result.details.digest.hex()})
        elif isinstance(result, NotFound):
            CHAIN_LOOKUPS.labels("not_found").inc()
            logger.info("no previous attestation: %s", result.reason)
        else:
            CHAIN_LOOKUPS.labels("error").inc()
            logger.warning("previous attestation lookup failed: %s", result.cause)
        return result

    def _link(self, workflow_ref: str) -> LinkResult:
        try:
            identity = parse_workflow_ref(workflow_ref)
        except WorkflowRefError as e:
            return LinkError(str(e), e)

        if self._pointer_file and os.path.exists(self._pointer_file):
            try:
                return Found(read_chain_pointer(self._pointer_file))
            except AttestationFormatError as e:
                return LinkError(str(e), e)

        if self._store is None:
            return NotFound("no artifact store configured")

        if self._previous_file:
            # A stale copy must not outlive a NotFound or failed lookup.
            try:
                if os.path.lexists(self._previous_file):
                    os.remove(self._previous_file)
                out_dir = os.path.dirname(self._previous_file)
                if out_dir:
                    os.makedirs(out_dir, exist_ok=True)
            except OSError as e:
                return LinkError(f"cannot prepare {self._previous_file}: {e}", e)
            return self._fetch(identity, self._previous_file)
        with tempfile.TemporaryDirectory(prefix="url-oracle-") as tmp:
            return self._fetch(identity, os.path.join(tmp, PREVIOUS_ATTESTATION_NAME))

    def _fetch(self, identity: WorkflowIdentity, destination: str) -> LinkResult:
        lookup = self._store.fetch_latest(identity, destination)  # type: ignore[union-attr]
        if lookup.status == LookupStatus.NOT_FOUND:
            return NotFound(lookup.message or "no previous attestation")
        if lookup.status != LookupStatus.SUCCESS:
            return LinkError(f"artifact store error for {identity.ref()}: {lookup.message}")

        try:
            previous = load_attestation(destination)
        except AttestationFormatError as e:
            return LinkError(f"previous attestation is unusable: {e}", e)

        try:
            prev_ref = extract_claims(previous.identity_token).workflow_ref
        except ClaimError:
            prev_ref = None
            logger.warning("previous attestation token has no readable workflow claims")
        if prev_ref is not None and prev_ref != identity.ref():
            return LinkError(f"previous attestation belongs to {prev_ref!r}, not {identity.ref()!r}")

        details = AttestationDetails(digest=payload_digest(previous.payload), artifact_locator=lookup.locator)
        return Found(details, previous)


# ---------------------------------------------------------------------------
# Chain walk
# ---------------------------------------------------------------------------


@dataclass
class ChainReport:
    checked: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.checked > 0 and not self.errors


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ")
    except (TypeError, ValueError):
        return None


def verify_chain(attestations: Sequence[Attestation], *, require_genesis: bool = False) -> ChainReport:
    """
    Walk attestations oldest-first and check every link:
      - element i > 0 links to payload_digest(element i-1);
      - with require_genesis, element 0 has no link;
      - timestamps are well-formed and non-decreasing.
    Every link is checked; failures are collected, not raised.
    """
    report = ChainReport()
    prev_digest: Optional[bytes] = None
    prev_ts: Optional[datetime] = None

    for i, att in enumerate(attestations):
        report.checked += 1
        link = att.payload.previous_attestation_digest

        if i == 0:
            if require_genesis and link is not None:
                report.errors.append("attestation 0: first attestation must not link backwards")
        elif link is None:
            report.errors.append(f"attestation {i}: missing previous_attestation_digest")
        elif not secure_compare_bytes(link, prev_digest):
            report.errors.append(f"attestation {i}: previous_attestation_digest does not match attestation {i - 1}")

        ts = _parse_ts(att.payload.timestamp)
        if ts is None:
            report.errors.append(f"attestation {i}: malformed timestamp {att.payload.timestamp!r}")
        elif prev_ts is not None and ts < prev_ts:
            report.errors.append(f"attestation {i}: timestamp goes backwards")
        if ts is not None:
            prev_ts = ts

        prev_digest = payload_digest(att.payload)

    if not attestations:
        report.errors.append("empty chain")
    return report


__all__ = [
    "WorkflowIdentity",
    "parse_workflow_ref",
    "LookupStatus",
    "LookupResult",
    "ArtifactStore",
    "ScriptArtifactStore",
    "DirectoryArtifactStore",
    "write_chain_pointer",
    "read_chain_pointer",
    "Found",
    "NotFound",
    "LinkError",
    "LinkResult",
    "ChainLinker",
    "ChainReport",
    "verify_chain",
]
