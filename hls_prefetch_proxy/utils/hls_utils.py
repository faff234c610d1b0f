import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urlencode, urljoin

from hls_prefetch_proxy.utils.segment_keys import should_fetch

logger = logging.getLogger(__name__)

URI_ATTRIBUTE_PATTERN = re.compile(r'URI="([^"]+)"')


def is_master_playlist(playlist_content: str) -> bool:
    return "#EXT-X-STREAM-INF" in playlist_content


def extract_segment_urls(playlist_content: str, base_url: str) -> List[str]:
    """
    Extract segment URLs from HLS media playlist content.

    Args:
        playlist_content (str): Content of the HLS playlist
        base_url (str): Base URL for resolving relative URLs

    Returns:
        List[str]: Absolute URLs of the cacheable segments, in playlist order
    """
    segment_urls = []
    for line in playlist_content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        url = urljoin(base_url, line)
        if should_fetch(url):
            segment_urls.append(url)

    logger.debug(f"Extracted {len(segment_urls)} segment URLs from playlist {base_url}")
    return segment_urls


def rewrite_playlist(
    playlist_content: str,
    base_url: str,
    segment_proxy_url: str,
    playlist_proxy_url: str,
    query_params: Optional[Dict[str, str]] = None,
) -> str:
    """
    Point the URIs of a playlist back at the proxy.

    Segments go through ``segment_proxy_url`` and nested playlists through
    ``playlist_proxy_url``. Other URIs (keys, init sections) are only made
    absolute so they still resolve once the playlist is served from the proxy.

    Args:
        playlist_content (str): The m3u8 content to process.
        base_url (str): The base URL to resolve relative URLs.
        segment_proxy_url (str): Absolute URL of the segment endpoint.
        playlist_proxy_url (str): Absolute URL of the playlist endpoint.
        query_params (dict, optional): Extra query parameters (API password, ``h_`` headers) carried
            over to every proxied URL.

    Returns:
        str: The processed m3u8 content.
    """

    def proxy_url(url: str) -> str:
        url = urljoin(base_url, url)
        if should_fetch(url):
            endpoint = segment_proxy_url
        elif ".m3u8" in url.lower():
            endpoint = playlist_proxy_url
        else:
            return url
        params = {"d": url}
        params.update(query_params or {})
        return f"{endpoint}?{urlencode(params)}"

    processed_lines = []
    for line in playlist_content.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            processed_lines.append(URI_ATTRIBUTE_PATTERN.sub(lambda m: f'URI="{proxy_url(m.group(1))}"', line))
        elif stripped:
            processed_lines.append(proxy_url(stripped))
        else:
            processed_lines.append(line)
    return "\n".join(processed_lines)
