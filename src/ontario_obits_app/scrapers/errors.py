#!filepath: src/ontario_obits_app/scrapers/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional

import requests

from ontario_obits_app.utils.url import redact_url


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    DNS = "dns"
    SSL = "ssl"
    CONNECTION = "connection"
    HTTP_STATUS = "http_status"


_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "nameresolutionerror",
    "failed to resolve",
    "temporary failure in name resolution",
)


class FetchError(Exception):
    """Classified failure fetching a source page.

    Attributes:
        kind: Failure class.
        url: Requested URL with the query string removed.
        status_code: HTTP status for `HTTP_STATUS` failures.
        attempts: Attempts made before giving up.
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        url: str,
        *,
        status_code: Optional[int] = None,
        message: str = "",
        attempts: int = 1,
    ) -> None:
        self.kind = kind
        self.url = redact_url(url)
        self.status_code = status_code
        self.attempts = attempts
        detail = f"status={status_code}" if status_code else message[:200]
        super().__init__(f"{kind.value} fetching {self.url}: {detail}".strip())

    @property
    def retryable(self) -> bool:
        if self.kind == FetchErrorKind.SSL:
            return False
        if self.kind == FetchErrorKind.HTTP_STATUS:
            code = int(self.status_code or 0)
            return code == 429 or code >= 500
        return True

    @property
    def code(self) -> str:
        """Event code for telemetry."""
        if self.kind == FetchErrorKind.HTTP_STATUS:
            family = "5XX" if int(self.status_code or 0) >= 500 else "4XX"
            return f"SCRAPE_HTTP_{family}"
        return f"SCRAPE_{self.kind.value.upper()}"

    @classmethod
    def from_request_exception(cls, exc: requests.RequestException, url: str) -> FetchError:
        """Map a requests exception onto a fetch error kind."""
        text = str(exc)
        if isinstance(exc, requests.exceptions.SSLError):
            kind = FetchErrorKind.SSL
        elif isinstance(exc, requests.exceptions.Timeout):
            kind = FetchErrorKind.TIMEOUT
        elif isinstance(exc, requests.exceptions.ConnectionError) and any(
            m in text.lower() for m in _DNS_MARKERS
        ):
            kind = FetchErrorKind.DNS
        else:
            kind = FetchErrorKind.CONNECTION
        return cls(kind, url, message=type(exc).__name__)


class StructureError(Exception):
    """A listing page no longer matches any known card container."""

    def __init__(self, domain: str, url: str, tried: int) -> None:
        self.domain = domain
        self.url = redact_url(url)
        self.tried = tried
        super().__init__(
            f"No obituary containers found, source={domain}, url={self.url}, selectors_tried={tried}"
        )
