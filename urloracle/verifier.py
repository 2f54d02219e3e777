from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import AttestationFormatError, IdentityVerificationError
from .identity import IdentityVerifier, unverified_claims
from .logging import bind, unbind
from .metrics import VERIFY_CHECKS
from .payload import Attestation, load_attestation, payload_digest, rebuild_payload
from .utils import secure_compare_bytes

logger = logging.getLogger(__name__)

CHECK_IDENTITY_TOKEN = "identity_token"
CHECK_SIGNATURE = "signature"
CHECK_PAYLOAD_DIGEST = "payload_digest"
CHECK_RECOMPUTATION = "recomputation"
CHECK_WORKFLOW_REF = "workflow_ref"
CHECK_COMMIT_SHA = "commit_sha"
CHECK_ORACLE_IDENTITY = "oracle_identity"

CHECK_ORDER = (
    CHECK_IDENTITY_TOKEN,
    CHECK_SIGNATURE,
    CHECK_PAYLOAD_DIGEST,
    CHECK_RECOMPUTATION,
    CHECK_WORKFLOW_REF,
    CHECK_COMMIT_SHA,
    CHECK_ORACLE_IDENTITY,
)

CHECK_LABELS = {
    CHECK_IDENTITY_TOKEN: "Identity Token",
    CHECK_SIGNATURE: "Signed Message",
    CHECK_PAYLOAD_DIGEST: "Payload Digest",
    CHECK_RECOMPUTATION: "Recomputed Digest",
    CHECK_WORKFLOW_REF: "Workflow Reference",
    CHECK_COMMIT_SHA: "Commit SHA",
    CHECK_ORACLE_IDENTITY: "Oracle Identity",
}


class CheckStatus(str, enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == CheckStatus.FAILED

    @property
    def label(self) -> str:
        return CHECK_LABELS.get(self.name, self.name)


@dataclass
class VerificationResult:
    """
    Per-check outcome of one verification run.

    Partial success is kept as-is; `ok` is the only place the checks are
    folded into a single verdict. Skipped checks (unconfigured expectations)
    do not fail the run.
    """

    checks: List[CheckResult] = field(default_factory=list)
    attestation_file: Optional[str] = None

    @property
    def ok(self) -> bool:
        names = {c.name for c in self.checks}
        return names.issuperset(CHECK_ORDER) and not any(c.failed for c in self.checks)

    @property
    def errors(self) -> List[str]:
        return [f"{c.label}: {c.error}" for c in self.checks if c.failed]

    def get(self, name: str) -> Optional[CheckResult]:
        for c in self.checks:
            if c.name == name:
                return c
        return None

    def summary(self) -> str:
        if self.ok:
            return "All verification checks passed"
        failed = [c for c in self.checks if c.failed]
        lines = [f"Verification failed ({len(failed)} of {len(self.checks)} checks):"]
        for err in self.errors:
            lines.append(f"  - {err}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "attestation_file": self.attestation_file,
            "checks": [
                {"name": c.name, "status": c.status.value, "error": c.error}
                for c in self.checks
            ],
        }


@dataclass(frozen=True)
class VerificationContext:
    """
    Deployment expectations. Unset fields skip the matching check (commit
    consistency between token and payload is always checked).
    """

    expected_workflow_ref: Optional[str] = None
    expected_commit_sha: Optional[str] = None
    expected_repository: Optional[str] = None


class Verifier:
    def __init__(self, identity_verifier: IdentityVerifier, context: Optional[VerificationContext] = None):
        self._identity = identity_verifier
        self._ctx = context or VerificationContext()

    def verify(self, attestation: Union[Attestation, str]) -> VerificationResult:
        path: Optional[str] = None
        if isinstance(attestation, str):
            path = attestation
            try:
                attestation = load_attestation(path)
            except AttestationFormatError as e:
                err = f"attestation could not be loaded: {e}"
                result = VerificationResult(
                    checks=[CheckResult(n, CheckStatus.FAILED, err) for n in CHECK_ORDER],
                    attestation_file=path,
                )
                self._record(result)
                return result

        result = VerificationResult(attestation_file=path)
        state = _RunState(attestation)
        for name in CHECK_ORDER:
            bind(check=name)
            try:
                result.checks.append(self._run_check(name, state))
            finally:
                unbind("check")
        self._record(result)
        return result

    # ------------------------------------------------------------------ #

    def _run_check(self, name: str, state: "_RunState") -> CheckResult:
        fn: Callable[[_RunState], CheckResult] = getattr(self, f"_check_{name}")
        try:
            return fn(state)
        except (IdentityVerificationError, AttestationFormatError, ValueError, TypeError) as e:
            return CheckResult(name, CheckStatus.FAILED, str(e))

    def _record(self, result: VerificationResult) -> None:
        for c in result.checks:
            VERIFY_CHECKS.labels(c.name, c.status.value).inc()
            if c.failed:
                logger.warning("verification check failed: %s", c.error, extra={"check": c.name})
            else:
                logger.info("verification check %s", c.status.value, extra={"check": c.name})

    def _check_identity_token(self, state: "_RunState") -> CheckResult:
        self._identity.verify_token(state.attestation.identity_token)
        return CheckResult(CHECK_IDENTITY_TOKEN, CheckStatus.PASSED)

    def _check_signature(self, state: "_RunState") -> CheckResult:
        state.message = self._identity.verify_signed_message(
            state.attestation.identity_token, state.attestation.signature
        )
        return CheckResult(CHECK_SIGNATURE, CheckStatus.PASSED)

    def _check_payload_digest(self, state: "_RunState") -> CheckResult:
        digest = payload_digest(state.attestation.payload)
        if state.message is None:
            return CheckResult(CHECK_PAYLOAD_DIGEST, CheckStatus.FAILED, "no signed message to compare against")
        if not secure_compare_bytes(digest, state.message):
            return CheckResult(
                CHECK_PAYLOAD_DIGEST, CheckStatus.FAILED, "payload digest does not match signed message"
            )
        return CheckResult(CHECK_PAYLOAD_DIGEST, CheckStatus.PASSED)

    def _check_recomputation(self, state: "_RunState") -> CheckResult:
        stored = state.attestation.payload
        fresh = rebuild_payload(stored)
        digest = payload_digest(fresh)

        problems: List[str] = []
        if not secure_compare_bytes(fresh.content_digest, stored.content_digest):
            problems.append("stored content_digest does not match content")
        if fresh.content_size != stored.content_size:
            problems.append(f"stored content_size {stored.content_size} != {fresh.content_size}")
        if state.message is None:
            problems.append("no signed message to compare against")
        elif not secure_compare_bytes(digest, state.message):
            problems.append("recomputed payload digest does not match signed message")

        if problems:
            return CheckResult(CHECK_RECOMPUTATION, CheckStatus.FAILED, "; ".join(problems))
        return CheckResult(CHECK_RECOMPUTATION, CheckStatus.PASSED)

    def _check_workflow_ref(self, state: "_RunState") -> CheckResult:
        expected = self._ctx.expected_workflow_ref
        if not expected:
            return CheckResult(CHECK_WORKFLOW_REF, CheckStatus.SKIPPED)
        actual = state.claims().get("job_workflow_ref")
        if actual != expected:
            return CheckResult(
                CHECK_WORKFLOW_REF,
                CheckStatus.FAILED,
                f"token workflow reference {actual!r} does not match expected {expected!r}",
            )
        return CheckResult(CHECK_WORKFLOW_REF, CheckStatus.PASSED)

    def _check_commit_sha(self, state: "_RunState") -> CheckResult:
        payload_sha = state.attestation.payload.commit_sha
        token_sha = state.claims().get("job_workflow_sha")

        problems: List[str] = []
        if token_sha != payload_sha:
            problems.append(f"token job_workflow_sha {token_sha!r} does not match payload commit_sha {payload_sha!r}")
        expected = self._ctx.expected_commit_sha
        if expected and payload_sha != expected:
            problems.append(f"payload commit_sha {payload_sha!r} does not match current commit {expected!r}")

        if problems:
            return CheckResult(CHECK_COMMIT_SHA, CheckStatus.FAILED, "; ".join(problems))
        return CheckResult(CHECK_COMMIT_SHA, CheckStatus.PASSED)

    def _check_oracle_identity(self, state: "_RunState") -> CheckResult:
        expected = self._ctx.expected_repository
        if not expected:
            return CheckResult(CHECK_ORACLE_IDENTITY, CheckStatus.SKIPPED)
        actual = state.claims().get("repository")
        if actual != expected:
            return CheckResult(
                CHECK_ORACLE_IDENTITY,
                CheckStatus.FAILED,
                f"token repository {actual!r} does not match oracle repository {expected!r}",
            )
        return CheckResult(CHECK_ORACLE_IDENTITY, CheckStatus.PASSED)


class _RunState:
    """Values shared between checks of one run."""

    def __init__(self, attestation: Attestation):
        self.attestation = attestation
        self.message: Optional[bytes] = None
        self._claims: Optional[Dict[str, Any]] = None

    def claims(self) -> Dict[str, Any]:
        if self._claims is None:
            self._claims = unverified_claims(self.attestation.identity_token)
        return self._claims


__all__ = [
    "CHECK_ORDER",
    "CHECK_LABELS",
    "CheckStatus",
    "CheckResult",
    "VerificationResult",
    "VerificationContext",
    "Verifier",
]
