# urloracle/tests/conftest.py
import json
import logging

import pytest
from jwcrypto import jwk, jwt

from urloracle.builder import AttestationBuilder
from urloracle.fetch import FetchedContent
from urloracle.identity import GITHUB_ISSUER, EphemeralIdentitySigner, IdentityVerifier
from urloracle.logging import reset
from urloracle.utils import sha256_digest

WORKFLOW_REF = "acme/oracle/.github/workflows/attest.yml@refs/heads/main"
COMMIT_SHA = "0123456789abcdef0123456789abcdef01234567"
REPOSITORY = "acme/oracle"
ISSUED_AT = 1700000000
URL = "https://example.com/a.json"


class LocalIssuer:
    """Token provider that signs GitHub-Actions-shaped OIDC tokens with a local RSA key."""

    def __init__(self, key):
        self.key = key
        self.audiences = []
        self.claims = {
            "iss": GITHUB_ISSUER,
            "job_workflow_sha": COMMIT_SHA,
            "job_workflow_ref": WORKFLOW_REF,
            "repository": REPOSITORY,
            "iat": ISSUED_AT,
            "exp": ISSUED_AT + 300,
        }

    @property
    def jwks_json(self):
        return json.dumps({"keys": [json.loads(self.key.export_public())]})

    def request_token(self, audience):
        self.audiences.append(audience)
        claims = {k: v for k, v in self.claims.items() if v is not None}
        claims["aud"] = audience
        tok = jwt.JWT(header={"alg": "RS256", "kid": self.key.key_id}, claims=claims)
        tok.make_signed_token(self.key)
        return tok.serialize()


class FakeFetcher:
    def __init__(self, content=b'{"v":1}'):
        self.content = content
        self.urls = []

    def fetch(self, url):
        self.urls.append(url)
        if isinstance(self.content, Exception):
            raise self.content
        return FetchedContent(url=url, content=self.content, digest=sha256_digest(self.content), size=len(self.content))


@pytest.fixture(scope="session")
def issuer_key():
    return jwk.JWK.generate(kty="RSA", size=2048, kid="test-key-1")


@pytest.fixture(scope="session")
def other_issuer_key():
    return jwk.JWK.generate(kty="RSA", size=2048, kid="test-key-1")


@pytest.fixture
def issuer(issuer_key):
    return LocalIssuer(issuer_key)


@pytest.fixture
def identity_verifier(issuer):
    return IdentityVerifier(issuer=GITHUB_ISSUER, jwks_url=None, jwks_json=issuer.jwks_json)


@pytest.fixture
def signer(issuer):
    return EphemeralIdentitySigner(issuer)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def build(fetcher, signer):
    """Build an unlinked attestation for `content`."""

    def _build(content=b'{"v":1}', url=URL):
        fetcher.content = content
        return AttestationBuilder(fetcher, signer).build(url, skip_chain_link=True)

    return _build


@pytest.fixture(autouse=True)
def _clean_logging():
    yield
    reset()
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

