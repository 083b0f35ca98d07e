#!filepath: src/ontario_obits_app/utils/url.py
from __future__ import annotations

from urllib.parse import urljoin, urlparse, urlunparse


def resolve_url(href: str | None, base_url: str) -> str:
    """Resolve a possibly relative link against the listing base URL."""
    raw = str(href or "").strip()
    if not raw or raw.startswith(("javascript:", "mailto:", "#", "data:")):
        return ""
    if raw.startswith("//"):
        return f"https:{raw}"
    return urljoin(base_url, raw)


def extract_domain(url: str | None) -> str:
    """Return the lowercased host of a URL without a leading `www.`."""
    raw = str(url or "").strip()
    if not raw:
        return ""
    try:
        host = (urlparse(raw).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def redact_url(url: str | None) -> str:
    """Drop query string, fragment and credentials from a URL for logging."""
    raw = str(url or "").strip()
    if not raw:
        return ""
    try:
        p = urlparse(raw)
    except ValueError:
        return raw.split("?", 1)[0]
    netloc = p.hostname or ""
    if p.port:
        netloc = f"{netloc}:{p.port}"
    return urlunparse((p.scheme, netloc, p.path, "", "", ""))


def with_query_param(url: str, key: str, value: str | int) -> str:
    """Set a query parameter on a URL, appending with `?` or `&`."""
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{key}={value}"
