from __future__ import annotations

from typing import Optional


class OracleError(Exception):
    """Base error for url-oracle."""


class ConfigError(OracleError):
    """Invalid or missing configuration."""


class FetchError(OracleError):
    """Content could not be retrieved from the target URL."""


class AuthenticationError(OracleError):
    """The identity provider was unreachable or rejected the request."""


class ClaimError(OracleError):
    """A required claim is missing from the identity token."""


class SigningError(OracleError):
    """The ephemeral key could not sign the payload digest."""


class IdentityVerificationError(OracleError):
    """Identity token or signed message failed verification."""


class WorkflowRefError(OracleError):
    """A workflow reference does not have the expected shape."""


class ChainLinkError(OracleError):
    """The previous attestation could not be located due to a failure."""


class AttestationFormatError(OracleError):
    """A persisted attestation or chain pointer is malformed."""


class BuildError(OracleError):
    """
    Fatal failure while building an attestation.

    `step` names the build stage ("fetch", "authenticate", "claims",
    "chain_link", "sign", "persist"); the underlying error is chained as
    __cause__.
    """

    def __init__(self, step: str, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.cause = cause


__all__ = [
    "OracleError",
    "ConfigError",
    "FetchError",
    "AuthenticationError",
    "ClaimError",
    "SigningError",
    "IdentityVerificationError",
    "WorkflowRefError",
    "ChainLinkError",
    "AttestationFormatError",
    "BuildError",
]
