"""
Attestation builder.

    fetch content -> authenticate -> extract claims -> link previous
      -> build payload -> sign payload digest -> persist

commit_sha, timestamp and the workflow reference come only from the
identity token; callers cannot supply them. Every failure is fatal and is
raised as BuildError(step=...) with the underlying error chained. A
LinkError from the chain linker is fatal too: skipping the link is an
explicit choice (skip_chain_link=True), never a fallback.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Protocol

from .chain import ChainLinker, Found, LinkError, write_chain_pointer
from .errors import (
    AttestationFormatError,
    AuthenticationError,
    BuildError,
    ChainLinkError,
    ClaimError,
    FetchError,
    SigningError,
)
from .fetch import ContentFetcher
from .identity import SignerSession, extract_claims
from .logging import bind, unbind
from .metrics import BUILDS
from .payload import (
    Attestation,
    AttestationDetails,
    build_payload,
    payload_digest,
    save_attestation,
)

logger = logging.getLogger(__name__)


class IdentitySigner(Protocol):
    def authenticate(self) -> SignerSession:
        ...


class AttestationBuilder:
    def __init__(
        self,
        fetcher: ContentFetcher,
        signer: IdentitySigner,
        linker: Optional[ChainLinker] = None,
    ):
        self._fetcher = fetcher
        self._signer = signer
        self._linker = linker

    def build(self, url: str, *, skip_chain_link: bool = False) -> Attestation:
        bind(url=url)
        try:
            attestation = self._build(url, skip_chain_link=skip_chain_link)
        except BuildError as e:
            BUILDS.labels(e.step).inc()
            raise
        finally:
            unbind("url", "commit_sha", "workflow_ref", "step")
        BUILDS.labels("ok").inc()
        return attestation

    def _build(self, url: str, *, skip_chain_link: bool) -> Attestation:
        # 1. content
        bind(step="fetch")
        try:
            fetched = self._fetcher.fetch(url)
        except FetchError as e:
            raise BuildError("fetch", str(e), cause=e) from e

        # 2. identity
        bind(step="authenticate")
        try:
            session = self._signer.authenticate()
        except AuthenticationError as e:
            raise BuildError("authenticate", str(e), cause=e) from e

        bind(step="claims")
        try:
            claims = extract_claims(session.identity_token)
        except ClaimError as e:
            raise BuildError("claims", str(e), cause=e) from e
        bind(commit_sha=claims.commit_sha, workflow_ref=claims.workflow_ref)

        # 3. chain link
        previous: Optional[bytes] = None
        if skip_chain_link:
            logger.info("chain linking skipped")
        else:
            bind(step="chain_link")
            if self._linker is None:
                raise BuildError("chain_link", "chain linking requested but no linker configured")
            result = self._linker.link(claims.workflow_ref)
            if isinstance(result, LinkError):
                err = ChainLinkError(result.cause)
                raise BuildError("chain_link", result.cause, cause=result.error or err) from (result.error or err)
            if isinstance(result, Found):
                previous = result.details.digest

        # 4. payload + signature over its digest
        bind(step="sign")
        payload = build_payload(
            claims.timestamp,
            claims.commit_sha,
            url,
            fetched.content,
            previous,
        )
        digest = payload_digest(payload)
        try:
            signature = session.sign(digest)
        except SigningError as e:
            raise BuildError("sign", str(e), cause=e) from e

        logger.info(
            "attestation built",
            extra={
                "payload_digest": digest.hex(),
                "content_digest": payload.content_digest_hex,
                "linked": previous is not None,
            },
        )
        return Attestation(payload=payload, identity_token=session.identity_token, signature=signature)

    def build_and_save(
        self,
        url: str,
        attestation_file: str,
        *,
        skip_chain_link: bool = False,
        pointer_file: Optional[str] = None,
        artifact_locator: Optional[str] = None,
    ) -> Attestation:
        """
        Build, then persist. When pointer_file is set, also write a chain
        pointer for the new attestation so the next run can link to it
        without downloading the full artifact.
        """
        attestation = self.build(url, skip_chain_link=skip_chain_link)
        try:
            save_attestation(attestation, attestation_file)
            if pointer_file:
                details = AttestationDetails(
                    digest=payload_digest(attestation.payload),
                    artifact_locator=artifact_locator or os.path.abspath(attestation_file),
                )
                write_chain_pointer(details, pointer_file)
        except (OSError, AttestationFormatError) as e:
            BUILDS.labels("persist").inc()
            raise BuildError("persist", f"failed to write attestation: {e}", cause=e) from e
        logger.info("attestation saved", extra={"path": attestation_file})
        return attestation


__all__ = ["IdentitySigner", "AttestationBuilder"]
