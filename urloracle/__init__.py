"""url-oracle: signed, hash-chained attestations of URL content."""

__version__ = "0.1.0"

from .builder import AttestationBuilder
from .chain import ChainLinker, Found, LinkError, NotFound, parse_workflow_ref, verify_chain
from .payload import (
    Attestation,
    AttestationDetails,
    AttestationPayload,
    build_payload,
    check_for_change,
    load_attestation,
    payload_digest,
    save_attestation,
)
from .verifier import VerificationContext, VerificationResult, Verifier

__all__ = [
    "__version__",
    "AttestationBuilder",
    "ChainLinker",
    "Found",
    "NotFound",
    "LinkError",
    "parse_workflow_ref",
    "verify_chain",
    "Attestation",
    "AttestationDetails",
    "AttestationPayload",
    "build_payload",
    "check_for_change",
    "load_attestation",
    "payload_digest",
    "save_attestation",
    "VerificationContext",
    "VerificationResult",
    "Verifier",
]
