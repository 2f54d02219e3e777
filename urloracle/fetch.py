from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.request import Request as UrlReq
from urllib.request import urlopen

from .errors import FetchError
from .metrics import FETCH_SECONDS
from .utils import sha256_digest

logger = logging.getLogger(__name__)

_USER_AGENT = "url-oracle/1.0"
_DEFAULT_MAX_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True)
class FetchedContent:
    url: str
    content: bytes
    digest: bytes
    size: int


class ContentFetcher:
    """
    Blocking GET of a single URL. Any status other than 200 is fatal; there
    is no retry (the CI job is the retry unit).
    """

    def __init__(self, *, timeout_s: float = 30.0, max_bytes: int = _DEFAULT_MAX_BYTES):
        self._timeout = float(timeout_s)
        self._max_bytes = int(max_bytes)

    def fetch(self, url: str) -> FetchedContent:
        if not url.lower().startswith(("https://", "http://")):
            raise FetchError(f"unsupported URL scheme: {url!r}")

        req = UrlReq(url, headers={"User-Agent": _USER_AGENT})
        t0 = time.perf_counter()
        try:
            with urlopen(req, timeout=self._timeout) as resp:  # nosec B310 - scheme checked above
                status = getattr(resp, "status", 200)
                if status != 200:
                    raise FetchError(f"HTTP request for {url} failed with status: {status}")
                content = resp.read(self._max_bytes + 1)
        except HTTPError as e:
            raise FetchError(f"HTTP request for {url} failed with status: {e.code}") from e
        except (URLError, OSError) as e:
            raise FetchError(f"failed to download content from {url}: {e}") from e
        finally:
            FETCH_SECONDS.observe(time.perf_counter() - t0)

        if len(content) > self._max_bytes:
            raise FetchError(f"content from {url} exceeds {self._max_bytes} bytes")

        fetched = FetchedContent(url=url, content=content, digest=sha256_digest(content), size=len(content))
        logger.info(
            "downloaded content",
            extra={"url": url, "content_size": fetched.size, "content_digest": fetched.digest.hex()},
        )
        return fetched


__all__ = ["FetchedContent", "ContentFetcher"]
