"""First-run validation of a server URL and password."""

import logging
import socket

import httpx

from collabtable.errors import ServerValidationError
from collabtable.transport import server_root

logger = logging.getLogger("collabtable.setup")

SETUP_TIMEOUT = 10.0
PASSWORD_PLACEHOLDER = "$password"

HEALTH_ERRORS = {
    404: "Health endpoint not found. Check server URL.",
    500: "Server internal error. Check server logs.",
    503: "Service unavailable. Server may be starting up.",
}

AUTH_ERRORS = {
    401: "Invalid password. Please check and try again.",
    403: "Access forbidden. Check server configuration.",
    404: "API endpoint not found. Check URL path.",
    500: "Server error. Check server logs.",
    503: "Service unavailable. Try again later.",
}

_DNS_MARKERS = ("name or service not known", "nodename nor servname", "getaddrinfo", "name resolution")


def normalize_url(url: str) -> str:
    """``host:3000/api/`` -> ``http://host:3000``."""
    url = url.strip()
    if not url:
        raise ServerValidationError("Server URL cannot be empty")
    if not url.startswith(("http://", "https://")):
        url = "http://" + url
    return server_root(url)


def _is_dns_failure(exc: BaseException) -> bool:
    seen = exc
    while seen is not None:
        if isinstance(seen, socket.gaierror):
            return True
        if any(marker in str(seen).lower() for marker in _DNS_MARKERS):
            return True
        seen = seen.__cause__ or seen.__context__
    return False


async def _probe_https(client: httpx.AsyncClient, url: str) -> str:
    """Return the https:// form of ``url`` if its health probe answers too."""
    if not url.startswith("http://"):
        return url
    https_url = "https://" + url[len("http://"):]
    if https_url.endswith(":80"):
        https_url = https_url[: -len(":80")] + ":443"
    try:
        response = await client.get(f"{https_url}/health")
    except httpx.HTTPError as e:
        logger.debug(f"HTTPS probe failed, keeping {url}: {e}")
        return url
    if response.is_success:
        logger.info(f"Server also answers on HTTPS, using {https_url}")
        return https_url
    return url


async def validate_server(url: str, password: str, client: httpx.AsyncClient | None = None) -> str:
    """Check that ``url`` hosts a reachable server accepting ``password``.

    Returns the URL to store, upgraded to https:// when that works.
    Raises ServerValidationError with a message fit for the user.
    """
    base = normalize_url(url)
    password = (password or "").strip()
    if not password:
        raise ServerValidationError("Password cannot be empty")
    if password == PASSWORD_PLACEHOLDER:
        raise ServerValidationError("Enter the actual server password, not the placeholder $password")

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=httpx.Timeout(SETUP_TIMEOUT))
    try:
        health = await client.get(f"{base}/health")
        if not health.is_success:
            raise ServerValidationError(
                HEALTH_ERRORS.get(health.status_code, f"Server returned HTTP {health.status_code}")
            )

        final_url = await _probe_https(client, base)

        response = await client.get(
            f"{final_url}/api/lists", headers={"Authorization": f"Bearer {password}"}
        )
        if not response.is_success:
            raise ServerValidationError(
                AUTH_ERRORS.get(response.status_code, f"Server returned HTTP {response.status_code}")
            )
    except httpx.ConnectError as e:
        if _is_dns_failure(e):
            raise ServerValidationError(
                "Cannot resolve hostname. Check URL spelling and network connection."
            ) from e
        raise ServerValidationError(
            "Cannot connect to server. Check if server is running and URL is correct."
        ) from e
    except httpx.TimeoutException as e:
        raise ServerValidationError(
            f"Connection timeout after {SETUP_TIMEOUT:g} seconds. Server may be offline or unreachable."
        ) from e
    except httpx.HTTPError as e:
        raise ServerValidationError(f"Network error: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    logger.info(f"Server at {final_url} accepted the password")
    return final_url
