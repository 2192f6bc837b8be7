"""Target URL validation and domain normalization."""

import re
from urllib.parse import urlparse, urlunparse

from rankscope.executor.errors import InvalidInputError

_HOST_RE = re.compile(r"^[a-z0-9.-]+$", re.IGNORECASE)


def ascii_host(host: str) -> str:
    """Lower-cased host with internationalized labels in punycode.

    Raises UnicodeError for a host the IDNA codec cannot encode.
    """
    host = host.lower()
    if host.isascii():
        return host
    return host.encode("idna").decode("ascii")


def normalize_url(url: str) -> str:
    """Return an absolute http(s) URL, adding https:// when no scheme is given.

    Internationalized hosts (e.g. https://한국치과.kr) are stored in their
    ASCII form. Raises InvalidInputError for anything that cannot be a
    website address.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidInputError("Target URL is required")
    candidate = url.strip()
    if any(ch.isspace() for ch in candidate):
        raise InvalidInputError(f"Invalid URL format: '{url}'")
    if "://" not in candidate:
        candidate = "https://" + candidate

    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https"):
        raise InvalidInputError(f"Unsupported URL scheme: '{parsed.scheme}'")
    try:
        host = ascii_host(parsed.hostname or "")
        port = parsed.port
    except (UnicodeError, ValueError):
        raise InvalidInputError(f"Invalid URL format: '{url}'")
    if not host or "." not in host or not _HOST_RE.match(host):
        raise InvalidInputError(f"Invalid URL format: '{url}'")

    if host != parsed.hostname:
        userinfo = parsed.netloc.rpartition("@")[0]
        netloc = host if port is None else f"{host}:{port}"
        parsed = parsed._replace(netloc=f"{userinfo}@{netloc}" if userinfo else netloc)
    return urlunparse(parsed._replace(path=parsed.path or "/"))


def extract_domain(url: str) -> str:
    """Hostname without a leading www., lower-cased and in ASCII form."""
    host = urlparse(normalize_url(url)).hostname or ""
    return re.sub(r"^www\.", "", host.lower())
