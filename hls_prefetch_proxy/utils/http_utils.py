import logging
from typing import Dict, Optional

import httpx
import tenacity
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from hls_prefetch_proxy.configs import settings
from hls_prefetch_proxy.const import SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient configured from the transport settings.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    mounts = settings.transport_config.get_mounts()
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    return httpx.AsyncClient(mounts=mounts, follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type(DownloadError),
)
async def fetch_with_retry(client, method, url, headers, follow_redirects=True, **kwargs):
    """
    Fetch a URL with retry logic.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method (e.g., GET, POST).
        url (str): Target URL.
        headers (dict): Request headers.
        follow_redirects (bool): Whether to follow redirects.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request fails after retries.
        httpx.HTTPStatusError: If the resource does not exist (not retried).
    """
    try:
        response = await client.request(method, url, headers=headers, follow_redirects=follow_redirects, **kwargs)
        response.raise_for_status()
        return response
    except httpx.TimeoutException:
        logger.warning(f"Timeout while downloading {url}")
        raise DownloadError(409, f"Timeout while downloading {url}")
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error {e.response.status_code} while downloading {url}")
        if e.response.status_code == 404:
            logger.error(f"Segment Resource not found: {url}")
            raise e
        raise DownloadError(e.response.status_code, f"HTTP error {e.response.status_code} while downloading {url}")
    except httpx.RequestError as e:
        logger.error(f"Error downloading {url}: {e}")
        raise DownloadError(502, f"Error downloading {url}: {e}")


def build_request_options(url: str, headers: Optional[Dict[str, str]] = None) -> dict:
    """
    Build the request options used to fetch ``url`` upstream.

    The configured user agent and extra request headers are applied first;
    ``headers`` (e.g. forwarded from the player) override them.
    """
    request_headers = {"user-agent": settings.user_agent}
    request_headers.update({key.lower(): value for key, value in settings.request_headers.items()})
    if headers:
        request_headers.update(
            {key.lower(): value for key, value in headers.items() if key.lower() in SUPPORTED_REQUEST_HEADERS}
        )
    return {"method": "GET", "url": url, "headers": request_headers}


class SegmentDownloader:
    """Downloads whole resources over one shared client; the segment cache's fetch primitive."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or create_httpx_client()

    async def __call__(self, options: dict) -> bytes:
        url = options["url"]
        try:
            response = await fetch_with_retry(
                self.client, options.get("method", "GET"), url, options.get("headers", {})
            )
        except httpx.HTTPStatusError as e:
            raise DownloadError(e.response.status_code, f"HTTP error {e.response.status_code} while downloading {url}")
        except tenacity.RetryError as e:
            raise DownloadError(502, f"Failed to download {url}: {e.last_attempt.exception()}")
        return response.content

    async def aclose(self):
        await self.client.aclose()
