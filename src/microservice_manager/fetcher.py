"""HTTP(S) retrieval of payloads and version markers."""

from __future__ import annotations

import httpx

from microservice_manager.constants import FETCH_TIMEOUT_SECONDS
from microservice_manager.errors import FetchError
from microservice_manager.logging import get_logger
from microservice_manager.versioning import VersionTag, parse_version

log = get_logger("microservice_manager.fetcher")


class RemoteFetcher:
    """Download remote files.  Every failure surfaces as ``FetchError``."""

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def fetch_bytes(self, url: str) -> bytes:
        try:
            with httpx.Client(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                resp = client.get(url)
        except httpx.TimeoutException as exc:
            log.warning("fetch_timeout", url=url, timeout=self._timeout)
            raise FetchError(url, f"timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            log.warning("fetch_failed", url=url, error=str(exc))
            raise FetchError(url, str(exc) or type(exc).__name__) from exc

        if not resp.is_success:
            log.warning("fetch_bad_status", url=url, status=resp.status_code)
            raise FetchError(url, f"HTTP {resp.status_code}")

        log.debug("fetch_ok", url=url, size=len(resp.content))
        return resp.content

    def fetch_text(self, url: str) -> str:
        return self.fetch_bytes(url).decode("utf-8", errors="replace")

    def fetch_version(self, url: str) -> VersionTag | None:
        """Fetch a published version string; None if it is not CalVer."""
        raw = self.fetch_text(url).strip()
        version = parse_version(raw.splitlines()[0] if raw else "")
        if version is None:
            log.debug("fetch_version_unparseable", url=url, content=raw[:40])
        return version
