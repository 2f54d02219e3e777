"""
Identity-bound ephemeral-key signing.

Flow (builder side):
  1. generate an ephemeral Ed25519 key;
  2. build client instance claims  cic = {"alg", "upk", "rz"}  where upk is
     the public JWK and rz a random nonce;
  3. request an OIDC token from the CI provider with
         audience = base64url(sha256(canonical_json(cic)))
     so the issuer's signature covers a commitment to the ephemeral key;
  4. sign messages as compact JWS (EdDSA) under the ephemeral key.

The persisted identity token is {"op_token": <JWT compact>, "cic": {...}}.
Apart from verification, the only code that looks inside it is
extract_claims(), which fails loudly when a required claim is absent.

Verifier side:
  - verify_token(): JWT signature against the issuer key set, "iss", and the
    audience == commitment(cic) binding. Expiry is not checked; attestations
    are verified long after the short-lived token expired.
  - verify_signed_message(): JWS under upk; returns the recovered message.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request as UrlReq
from urllib.request import urlopen

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from jwcrypto import jwk, jws
from jwcrypto.common import JWException, json_encode

from .errors import (
    AuthenticationError,
    ClaimError,
    IdentityVerificationError,
    SigningError,
)
from .utils import b64url_nopad, canonical_json_bytes, sha256_digest

logger = logging.getLogger(__name__)

GITHUB_ISSUER = "https://token.actions.githubusercontent.com"
GITHUB_JWKS_URL = GITHUB_ISSUER + "/.well-known/jwks"

SIGNED_MESSAGE_TYPE = "url-oracle+jws"
EPHEMERAL_ALG = "EdDSA"

# Issuer signing algorithms accepted for identity tokens.
_TOKEN_ALGS = ["RS256", "RS384", "RS512", "ES256", "ES384", "PS256"]

_USER_AGENT = "url-oracle/1.0"


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IdentityClaims:
    """
    Claims the core relies on:
      - commit_sha   : job_workflow_sha (revision of the workflow definition)
      - timestamp    : iat rendered as RFC 3339 UTC
      - workflow_ref : job_workflow_ref ("owner/repo/.github/workflows/f@refs/heads/b")
      - repository   : repository claim (may be empty)
      - issuer       : iss claim (may be empty)
      - issued_at    : raw iat
    """

    commit_sha: str
    timestamp: str
    workflow_ref: str
    repository: str
    issuer: str
    issued_at: int


def format_timestamp(iat: int) -> str:
    return datetime.fromtimestamp(int(iat), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _b64url_decode(segment: str) -> bytes:
    pad = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + pad)


def _token_parts(token: Any) -> Tuple[str, Dict[str, Any]]:
    if not isinstance(token, Mapping):
        raise IdentityVerificationError("identity token must be a JSON object")
    op_token = token.get("op_token")
    cic = token.get("cic")
    if not isinstance(op_token, str) or op_token.count(".") != 2:
        raise IdentityVerificationError("identity token has no compact op_token")
    if not isinstance(cic, Mapping):
        raise IdentityVerificationError("identity token has no cic object")
    return op_token, dict(cic)


def unverified_claims(token: Any) -> Dict[str, Any]:
    """Decode the op_token claim set without checking its signature."""
    op_token, _ = _token_parts(token)
    try:
        claims = json.loads(_b64url_decode(op_token.split(".")[1]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise IdentityVerificationError(f"identity token claims are not valid JSON: {e}") from e
    if not isinstance(claims, dict):
        raise IdentityVerificationError("identity token claims must be a JSON object")
    return claims


def extract_claims(token: Any) -> IdentityClaims:
    try:
        claims = unverified_claims(token)
    except IdentityVerificationError as e:
        raise ClaimError(f"failed to parse identity token: {e}") from e

    commit_sha = claims.get("job_workflow_sha")
    if not isinstance(commit_sha, str) or not commit_sha:
        raise ClaimError("job_workflow_sha claim not found in identity token")

    iat = claims.get("iat")
    if isinstance(iat, bool) or not isinstance(iat, (int, float)) or iat <= 0:
        raise ClaimError("iat claim not found in identity token")

    workflow_ref = claims.get("job_workflow_ref")
    if not isinstance(workflow_ref, str) or not workflow_ref:
        raise ClaimError("job_workflow_ref claim not found in identity token")

    try:
        timestamp = format_timestamp(int(iat))
    except (OverflowError, OSError, ValueError) as e:
        raise ClaimError(f"iat claim {iat!r} is not a usable timestamp: {e}") from e

    return IdentityClaims(
        commit_sha=commit_sha,
        timestamp=timestamp,
        workflow_ref=workflow_ref,
        repository=str(claims.get("repository") or ""),
        issuer=str(claims.get("iss") or ""),
        issued_at=int(iat),
    )


def cic_commitment(cic: Mapping[str, Any]) -> str:
    """Audience value that binds an OIDC token to the client instance claims."""
    return b64url_nopad(sha256_digest(canonical_json_bytes(dict(cic))))


# ---------------------------------------------------------------------------
# Token providers
# ---------------------------------------------------------------------------


class TokenProvider(Protocol):
    def request_token(self, audience: str) -> str:
        ...


class GitHubActionsTokenProvider:
    """
    Requests an OIDC token from the GitHub Actions token endpoint.

    request_url / request_token are the values the runner exposes as
    ACTIONS_ID_TOKEN_REQUEST_URL / ACTIONS_ID_TOKEN_REQUEST_TOKEN; they are
    passed in by the caller.
    """

    def __init__(self, request_url: str, request_token: str, *, timeout_s: float = 10.0):
        if not request_url or not request_token:
            raise AuthenticationError(
                "missing OIDC token request URL or token "
                "(ACTIONS_ID_TOKEN_REQUEST_URL / ACTIONS_ID_TOKEN_REQUEST_TOKEN)"
            )
        self._url = request_url
        self._token = request_token
        self._timeout = float(timeout_s)

    def request_token(self, audience: str) -> str:
        sep = "&" if "?" in self._url else "?"
        url = self._url + sep + urlencode({"audience": audience})
        req = UrlReq(
            url,
            headers={
                "Authorization": f"bearer {self._token}",
                "Accept": "application/json",
                "User-Agent": _USER_AGENT,
            },
        )
        try:
            with urlopen(req, timeout=self._timeout) as resp:  # nosec B310 - https endpoint from runner
                data = resp.read()
        except (URLError, OSError) as e:
            raise AuthenticationError(f"OIDC token request failed: {e}") from e
        try:
            obj = json.loads(data.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise AuthenticationError(f"OIDC token response is not JSON: {e}") from e
        value = obj.get("value") if isinstance(obj, dict) else None
        if not isinstance(value, str) or not value:
            raise AuthenticationError("OIDC token response has no 'value'")
        return value


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class SignerSession:
    """An authenticated identity: the persisted token plus its signing key."""

    def __init__(self, identity_token: Dict[str, Any], key: jwk.JWK):
        self.identity_token = identity_token
        self._key = key

    def sign(self, message: bytes) -> bytes:
        try:
            obj = jws.JWS(bytes(message))
            obj.add_signature(
                self._key,
                alg=EPHEMERAL_ALG,
                protected=json_encode({"alg": EPHEMERAL_ALG, "typ": SIGNED_MESSAGE_TYPE}),
            )
            return obj.serialize(compact=True).encode("ascii")
        except JWException as e:
            raise SigningError(f"failed to sign message: {e}") from e


class EphemeralIdentitySigner:
    """Creates a fresh ephemeral key per authentication."""

    def __init__(self, provider: TokenProvider):
        self._provider = provider

    def authenticate(self) -> SignerSession:
        key = jwk.JWK.from_pyca(Ed25519PrivateKey.generate())
        cic = {
            "alg": EPHEMERAL_ALG,
            "upk": key.export_public(as_dict=True),
            "rz": secrets.token_hex(32),
        }
        audience = cic_commitment(cic)
        op_token = self._provider.request_token(audience)
        if not isinstance(op_token, str) or op_token.count(".") != 2:
            raise AuthenticationError("identity provider returned a malformed token")
        logger.info("identity token issued")
        return SignerSession({"op_token": op_token, "cic": cic}, key)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class _JWKSCache:
    """
    Issuer key set, fetched once from a URL or taken from inline JSON.

    Inline JSON wins when both are set; that is how a verifier pins the key
    set it trusts (or verifies offline).
    """

    def __init__(self, url: Optional[str], inline_json: Optional[str], timeout_s: float = 10.0):
        raw_url = (url or "").strip()
        if raw_url and not raw_url.lower().startswith("https://"):
            raise ValueError("JWKS URL must use https")
        self._url = raw_url
        self._inline = (inline_json or "").strip()
        self._timeout = float(timeout_s)
        self._lock = threading.RLock()
        self._keyset: Optional[jwk.JWKSet] = None

    def _load(self) -> jwk.JWKSet:
        if self._inline:
            return jwk.JWKSet.from_json(self._inline)
        if not self._url:
            raise IdentityVerificationError("no JWKS source configured")
        req = UrlReq(self._url, headers={"User-Agent": _USER_AGENT})
        try:
            with urlopen(req, timeout=self._timeout) as resp:  # nosec B310 - https enforced above
                data = resp.read()
        except (URLError, OSError) as e:
            raise IdentityVerificationError(f"failed to fetch JWKS from {self._url}: {e}") from e
        return jwk.JWKSet.from_json(data.decode("utf-8"))

    def keyset(self) -> jwk.JWKSet:
        with self._lock:
            if self._keyset is None:
                try:
                    self._keyset = self._load()
                except (JWException, ValueError) as e:
                    raise IdentityVerificationError(f"invalid JWKS: {e}") from e
            return self._keyset


class IdentityVerifier:
    def __init__(
        self,
        *,
        issuer: str = GITHUB_ISSUER,
        jwks_url: Optional[str] = GITHUB_JWKS_URL,
        jwks_json: Optional[str] = None,
        timeout_s: float = 10.0,
    ):
        self.issuer = issuer
        self._jwks = _JWKSCache(jwks_url, jwks_json, timeout_s=timeout_s)

    def _select_key(self, header: Mapping[str, Any]) -> jwk.JWK:
        keyset = self._jwks.keyset()
        kid = header.get("kid")
        if kid:
            key = keyset.get_key(str(kid))
            if key is None:
                raise IdentityVerificationError(f"no issuer key for kid {kid!r}")
            return key
        keys: List[jwk.JWK] = list(keyset["keys"])
        if len(keys) != 1:
            raise IdentityVerificationError("token has no kid and issuer key set is ambiguous")
        return keys[0]

    def verify_token(self, token: Any) -> Dict[str, Any]:
        """Verify the identity token; return its verified claims."""
        op_token, cic = _token_parts(token)

        obj = jws.JWS()
        try:
            obj.deserialize(op_token)
            header = obj.jose_header
        except JWException as e:
            raise IdentityVerificationError(f"malformed op_token: {e}") from e

        alg = header.get("alg")
        if alg not in _TOKEN_ALGS:
            raise IdentityVerificationError(f"op_token alg {alg!r} not allowed")

        key = self._select_key(header)
        obj.allowed_algs = list(_TOKEN_ALGS)
        try:
            obj.verify(key)
        except JWException as e:
            raise IdentityVerificationError(f"op_token signature invalid: {e}") from e

        try:
            claims = json.loads(obj.payload.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise IdentityVerificationError(f"op_token claims are not valid JSON: {e}") from e
        if not isinstance(claims, dict):
            raise IdentityVerificationError("op_token claims must be a JSON object")

        if claims.get("iss") != self.issuer:
            raise IdentityVerificationError(
                f"op_token issuer {claims.get('iss')!r} does not match {self.issuer!r}"
            )

        expected_aud = cic_commitment(cic)
        aud = claims.get("aud")
        auds = aud if isinstance(aud, list) else [aud]
        if expected_aud not in auds:
            raise IdentityVerificationError("op_token audience does not commit to the ephemeral key")

        return claims

    def verify_signed_message(self, token: Any, signature: bytes) -> bytes:
        """Verify `signature` under the token's ephemeral key; return the message."""
        _, cic = _token_parts(token)
        if cic.get("alg") != EPHEMERAL_ALG:
            raise IdentityVerificationError(f"unsupported ephemeral key alg {cic.get('alg')!r}")
        upk = cic.get("upk")
        if not isinstance(upk, Mapping):
            raise IdentityVerificationError("cic has no upk")
        try:
            key = jwk.JWK(**dict(upk))
        except (JWException, ValueError, TypeError) as e:
            raise IdentityVerificationError(f"invalid upk: {e}") from e
        if key.has_private:
            raise IdentityVerificationError("upk must be a public key")

        try:
            compact = bytes(signature).decode("ascii")
        except UnicodeDecodeError as e:
            raise IdentityVerificationError("signature is not a compact JWS") from e

        obj = jws.JWS()
        try:
            obj.deserialize(compact)
            header = obj.jose_header
            if header.get("alg") != EPHEMERAL_ALG:
                raise IdentityVerificationError(f"signature alg {header.get('alg')!r} not allowed")
            obj.allowed_algs = [EPHEMERAL_ALG]
            obj.verify(key)
        except JWException as e:
            raise IdentityVerificationError(f"signed message verification failed: {e}") from e
        return obj.payload


__all__ = [
    "GITHUB_ISSUER",
    "GITHUB_JWKS_URL",
    "IdentityClaims",
    "extract_claims",
    "unverified_claims",
    "cic_commitment",
    "format_timestamp",
    "TokenProvider",
    "GitHubActionsTokenProvider",
    "SignerSession",
    "EphemeralIdentitySigner",
    "IdentityVerifier",
]
