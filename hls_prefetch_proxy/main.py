import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.security import APIKeyHeader, APIKeyQuery
from starlette.middleware.cors import CORSMiddleware

from hls_prefetch_proxy.configs import Settings, settings
from hls_prefetch_proxy.routes import proxy_router
from hls_prefetch_proxy.utils.http_utils import SegmentDownloader, build_request_options
from hls_prefetch_proxy.utils.segment_cache import Fetch, SegmentCache

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)


async def verify_api_key(
    request: Request,
    api_key: str = Security(api_password_query),
    api_key_alt: str = Security(api_password_header),
):
    """
    Verifies the API key for the request.

    Args:
        request (Request): The incoming request.
        api_key (str): The API key to validate.
        api_key_alt (str): The alternative API key to validate.

    Raises:
        HTTPException: If the API key is invalid.
    """
    api_password = request.app.state.settings.api_password
    if not api_password:
        return

    if api_key == api_password or api_key_alt == api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")


def create_app(app_settings: Settings = settings, fetch: Optional[Fetch] = None) -> FastAPI:
    """
    Build the proxy application.

    Each application owns one segment cache, created on startup and closed on
    shutdown.

    Args:
        app_settings (Settings): Configuration for this application.
        fetch (Fetch, optional): Fetch primitive to use instead of an httpx-backed SegmentDownloader.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        downloader = fetch or SegmentDownloader()
        app.state.settings = app_settings
        app.state.segment_downloader = downloader
        app.state.get_request_options = build_request_options
        app.state.segment_cache = SegmentCache(
            fetch=downloader,
            get_request_options=build_request_options,
            max_segments=app_settings.max_segments,
            cache_key=app_settings.cache_key,
            debug_level=app_settings.debug_level,
            diagnostics_interval=app_settings.diagnostics_interval,
        )
        logger.info(
            f"Segment cache ready (max_segments={app_settings.max_segments}, cache_key={app_settings.cache_key})"
        )
        try:
            yield
        finally:
            app.state.segment_cache.log_stats()
            await app.state.segment_cache.aclose()
            if fetch is None:
                await downloader.aclose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    app.include_router(proxy_router, prefix="/proxy", tags=["proxy"], dependencies=[Depends(verify_api_key)])
    return app


app = create_app()
