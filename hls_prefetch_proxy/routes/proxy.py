import logging
from typing import Annotated, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from hls_prefetch_proxy.const import HLS_PLAYLIST_MEDIA_TYPE, HLS_SEGMENT_MEDIA_TYPE
from hls_prefetch_proxy.schemas import SegmentCacheStatus
from hls_prefetch_proxy.utils.hls_utils import extract_segment_urls, is_master_playlist, rewrite_playlist
from hls_prefetch_proxy.utils.http_utils import DownloadError
from hls_prefetch_proxy.utils.segment_cache import CacheStatus, SegmentCache

logger = logging.getLogger(__name__)

proxy_router = APIRouter()

DestinationParam = Annotated[str, Query(alias="d", description="The upstream URL to proxy.")]


def get_segment_cache(request: Request) -> SegmentCache:
    return request.app.state.segment_cache


def get_proxy_headers(request: Request) -> Dict[str, str]:
    """Request headers for upstream, passed by the player as ``h_<name>`` query parameters."""
    return {key[2:]: value for key, value in request.query_params.items() if key.startswith("h_")}


def get_forwarded_params(request: Request) -> Dict[str, str]:
    """Query parameters carried over to the URLs of a rewritten playlist."""
    params = {key: value for key, value in request.query_params.items() if key.startswith("h_")}
    api_password = request.query_params.get("api_password") or request.headers.get("api_password")
    if api_password:
        params["api_password"] = api_password
    return params


def build_segment_request_options(request: Request, url: str) -> dict:
    return request.app.state.get_request_options(url, get_proxy_headers(request))


async def download_upstream(request: Request, url: str) -> bytes:
    """
    Download ``url`` directly, bypassing the segment cache.

    Raises:
        HTTPException: If the upstream request fails.
    """
    options = build_segment_request_options(request, url)
    try:
        return await request.app.state.segment_downloader(options)
    except DownloadError as e:
        raise HTTPException(status_code=e.status_code, detail=f"Failed to download {url}: {e.message}")


@proxy_router.get("/hls/manifest.m3u8", name="hls_manifest_proxy")
async def hls_manifest_proxy(
    request: Request,
    destination: DestinationParam,
    cache: SegmentCache = Depends(get_segment_cache),
):
    """
    Proxify an HLS playlist and prefetch the segments it lists.

    Args:
        request (Request): The incoming HTTP request.
        destination (str): The upstream playlist URL.
        cache (SegmentCache): The application's segment cache.

    Returns:
        Response: The playlist with its URIs pointing back at the proxy.
    """
    content = (await download_upstream(request, destination)).decode("utf-8", errors="replace")

    if not is_master_playlist(content):
        segment_urls = extract_segment_urls(content, destination)
        for url in segment_urls:
            cache.prefetch(url, build_segment_request_options(request, url))
        logger.debug(f"Requested prefetch of {len(segment_urls)} segments for {destination}")

    processed = rewrite_playlist(
        content,
        destination,
        segment_proxy_url=str(request.url_for("hls_segment_proxy")),
        playlist_proxy_url=str(request.url_for("hls_manifest_proxy")),
        query_params=get_forwarded_params(request),
    )
    return Response(content=processed, media_type=HLS_PLAYLIST_MEDIA_TYPE)


@proxy_router.get("/hls/segment.ts", name="hls_segment_proxy")
async def hls_segment_proxy(
    request: Request,
    destination: DestinationParam,
    cache: SegmentCache = Depends(get_segment_cache),
):
    """
    Serve a media segment, from the prefetch cache when possible.

    A segment that is still downloading is awaited as a listener. If that
    download fails or the wait times out, the segment is downloaded directly
    instead.
    """
    lookup = cache.get(destination)
    if lookup.status is CacheStatus.HIT:
        return Response(content=lookup.payload, media_type=HLS_SEGMENT_MEDIA_TYPE)

    if lookup.status is not CacheStatus.NOT_APPLICABLE:
        if lookup.status is CacheStatus.MISS:
            cache.prefetch(destination, build_segment_request_options(request, destination))
        payload = await cache.wait_for(destination, timeout=request.app.state.settings.listener_timeout)
        if payload is not None:
            return Response(content=payload, media_type=HLS_SEGMENT_MEDIA_TYPE)
        logger.warning(f"Prefetch did not deliver {destination}, falling back to direct download")

    content = await download_upstream(request, destination)
    return Response(content=content, media_type=HLS_SEGMENT_MEDIA_TYPE)


@proxy_router.get("/cache", name="segment_cache_status", response_model=SegmentCacheStatus)
async def segment_cache_status(cache: SegmentCache = Depends(get_segment_cache)):
    return SegmentCacheStatus(
        size=len(cache),
        capacity=cache.max_segments,
        keys=cache.keys(),
        stats=cache.stats.to_dict(),
    )
