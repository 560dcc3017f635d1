"""Upstream URL validation and request-time address checks.

Upstream URLs must use http(s) and resolve only to public addresses. The
check runs when an upstream is saved and again right before every outbound
request, including each redirect hop, so a hostname that is re-pointed at an
internal address after validation (DNS rebinding) is still refused.
"""

import asyncio
import ipaddress
import socket
from urllib.parse import urljoin, urlsplit

import httpx

from vregistry.config import settings
from vregistry.logging_config import get_logger
from vregistry.services.errors import BlockedUrlError, ValidationError

logger = get_logger(__name__)

ALLOWED_SCHEMES = ("http", "https")
MAX_URL_LENGTH = 255
MAX_REDIRECTS = 5
REDIRECT_STATUSES = (301, 302, 303, 307, 308)

LOCALHOST_NAMES = ("localhost", "localhost.localdomain")


def normalize_url(url: str | None) -> str:
    """Strip surrounding whitespace and trailing slashes."""
    return (url or "").strip().rstrip("/")


def validate_url_format(url: str) -> None:
    """Synchronous checks: presence, length, scheme and host."""
    if not url:
        raise ValidationError("url", "can't be blank")
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError("url", f"is too long (maximum is {MAX_URL_LENGTH} characters)")

    parts = urlsplit(url)
    if parts.scheme not in ALLOWED_SCHEMES:
        raise BlockedUrlError("Only allowed schemes are http, https")
    if not parts.hostname:
        raise ValidationError("url", "must be a valid URL")


def _check_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> None:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if address.is_loopback:
        raise BlockedUrlError("Requests to localhost are not allowed")
    if not address.is_global or address.is_multicast:
        raise BlockedUrlError("Requests to the local network are not allowed")


async def _resolve(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def ensure_public_url(url: str) -> None:
    """Raise BlockedUrlError unless every address the URL's host maps to is public.

    IP literals and localhost names are always checked; hostname resolution is
    skipped when verify_upstream_dns is disabled (tests, air-gapped setups).
    """
    validate_url_format(url)
    parts = urlsplit(url)
    host = parts.hostname or ""

    if host.lower() in LOCALHOST_NAMES:
        raise BlockedUrlError("Requests to localhost are not allowed")

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        literal = None

    if literal is not None:
        _check_address(literal)
        return

    if not settings.virtual_registries.verify_upstream_dns:
        return

    port = parts.port or (443 if parts.scheme == "https" else 80)
    try:
        addresses = await _resolve(host, port)
    except (OSError, UnicodeError):
        raise BlockedUrlError("Host cannot be resolved or invalid") from None

    if not addresses:
        raise BlockedUrlError("Host cannot be resolved or invalid")
    for address in addresses:
        _check_address(ipaddress.ip_address(address.split("%", 1)[0]))


async def send_checked(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    max_redirects: int = MAX_REDIRECTS,
) -> httpx.Response:
    """Send a request, validating the target and every redirect hop.

    Credentials are only sent to the original host; they are dropped when a
    redirect leaves it.
    """
    origin = urlsplit(url).netloc
    current = url
    for _ in range(max_redirects + 1):
        await ensure_public_url(current)
        send_headers = headers if urlsplit(current).netloc == origin else None
        response = await client.request(
            method, current, headers=send_headers, follow_redirects=False
        )
        location = response.headers.get("Location")
        if response.status_code not in REDIRECT_STATUSES or not location:
            return response
        await response.aclose()
        current = urljoin(current, location)
        logger.debug("Following upstream redirect", method=method, location=current)

    raise httpx.TooManyRedirects(f"Exceeded {max_redirects} redirects", request=response.request)
