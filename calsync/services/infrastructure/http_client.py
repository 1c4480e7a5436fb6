"""
Shared async HTTP plumbing for outbound API clients.
Connection pooling, bounded retry with exponential backoff, JSON decoding.
"""

import asyncio

import httpx

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 2
THROTTLED_STATUS_CODE = 429
SERVER_ERROR_STATUS_CODES = {500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}


def create_async_client(base_url: str = "") -> httpx.AsyncClient:
    """Create an async HTTP client using the configured limits."""
    config = settings.get_http_client_config()
    timeout = httpx.Timeout(config["timeout"])
    limits = httpx.Limits(
        max_keepalive_connections=config["max_keepalive_connections"],
        max_connections=config["max_connections"],
    )
    return httpx.AsyncClient(base_url=base_url, timeout=timeout, limits=limits)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_retries: int = MAX_RETRIES,
    retry_server_errors: bool | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Execute an HTTP request with retry and backoff.

    Throttling (429) and connection failures are retried for every method.
    5xx responses and errors after the request went out are only retried for
    idempotent methods unless ``retry_server_errors`` overrides that.
    """
    if retry_server_errors is None:
        retry_server_errors = method.upper() in IDEMPOTENT_METHODS
    retry_codes = {THROTTLED_STATUS_CODE}
    if retry_server_errors:
        retry_codes |= SERVER_ERROR_STATUS_CODES

    for attempt in range(1, max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
            if response.status_code in retry_codes and attempt < max_retries:
                backoff = _retry_after(response) or BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Retrying request",
                    url=url,
                    attempt=attempt,
                    status_code=response.status_code,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
                continue
            return response
        except httpx.RequestError as e:
            unsent = isinstance(e, httpx.ConnectError | httpx.ConnectTimeout)
            if attempt >= max_retries or not (unsent or retry_server_errors):
                raise
            backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
            logger.debug(
                "Request error, retrying",
                url=url,
                attempt=attempt,
                error=str(e),
                backoff_seconds=backoff,
            )
            await asyncio.sleep(backoff)
    raise RuntimeError("HTTP retry loop exhausted")


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return min(float(value), 60.0)
    except ValueError:
        return None


def decode_json(response: httpx.Response) -> dict:
    """Decode a JSON body, treating an empty body as an empty object."""
    if not response.text:
        return {}
    return response.json()
