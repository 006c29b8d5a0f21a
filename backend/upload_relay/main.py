"""Upload Relay Backend Application.

Entry point for the upload relay service.  Browsers send large files in
chunks; the relay reassembles them on local disk and commits each one to an
S3-compatible object store (Backblaze B2 by default), returning a CDN URL.

Modules:
    - uploads.router: chunked, legacy and maintenance HTTP endpoints
    - uploads.service: upload orchestration
    - uploads.reaper: background cleanup of abandoned sessions
    - config: YAML settings and secrets
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from upload_relay.config import AppSettings, get_config
from upload_relay.uploads.assembler import Assembler
from upload_relay.uploads.backend import S3ObjectStore
from upload_relay.uploads.chunk_store import ChunkStore
from upload_relay.uploads.coordinator import BackendUploadCoordinator
from upload_relay.uploads.key_resolver import KeyResolver
from upload_relay.uploads.reaper import Reaper, get_reaper, set_reaper
from upload_relay.uploads.registry import SessionRegistry
from upload_relay.uploads.router import register_error_handlers, router as uploads_router
from upload_relay.uploads.service import UploadService, set_upload_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, which carries
# credentials; urllib3 logs every connection.
for _noisy in (
    "botocore",
    "boto3",
    "s3transfer",
    "urllib3",
    "urllib3.connectionpool",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_upload_service(config: AppSettings) -> UploadService:
    """Wire the object store, chunk storage and orchestrator from *config*."""
    storage = config.storage
    uploads = config.uploads

    store = S3ObjectStore(
        bucket=storage.bucket,
        endpoint_url=storage.endpoint_url or None,
        region_name=storage.region or None,
        aws_access_key_id=config.secrets.storage.access_key_id or None,
        aws_secret_access_key=config.secrets.storage.secret_access_key or None,
        cdn_base_url=storage.cdn_base_url,
    )
    coordinator = BackendUploadCoordinator(
        store,
        single_shot_threshold=storage.single_shot_threshold,
        part_size=storage.part_size,
        max_workers=storage.max_part_workers,
    )
    chunk_store = ChunkStore(uploads.chunk_dir, max_chunk_size=uploads.max_chunk_size)

    return UploadService(
        registry=SessionRegistry(default_user_id=uploads.default_user_id),
        chunk_store=chunk_store,
        assembler=Assembler(chunk_store, uploads.spool_dir),
        resolver=KeyResolver(store, max_attempts=uploads.key_resolution_max_attempts),
        coordinator=coordinator,
        default_user_id=uploads.default_user_id,
        legacy_max_file_size=uploads.legacy_max_file_size,
        legacy_max_files=uploads.legacy_max_files,
    )


def build_reaper(config: AppSettings, service: UploadService) -> Reaper:
    reaper_cfg = config.reaper
    return Reaper(
        registry=service.registry,
        chunk_store=service.chunk_store,
        session_timeout=reaper_cfg.session_timeout_seconds,
        max_orphan_age=reaper_cfg.max_orphan_age_seconds,
        interval=reaper_cfg.interval_seconds,
        start_delay=reaper_cfg.start_delay_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = build_upload_service(config)
    set_upload_service(service)
    logger.info(
        "Upload service ready: bucket=%s chunk_dir=%s spool_dir=%s",
        config.storage.bucket,
        config.uploads.chunk_dir,
        config.uploads.spool_dir,
    )

    reaper = build_reaper(config, service)
    set_reaper(reaper)
    if config.reaper.enabled:
        await reaper.start()
    else:
        logger.info("Reaper disabled in config; sweeps only run via /admin/cleanup.")

    logger.info(
        "Server running on http://%s:%s",
        config.server.host,
        config.server.port,
    )

    yield  # Application runs here

    # Shutdown
    reaper = get_reaper()
    if reaper is not None and reaper.running:
        await reaper.stop()
    set_reaper(None)
    set_upload_service(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Upload Relay API",
    description="Chunked upload relay in front of an S3-compatible object store",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads_router)
register_error_handlers(app)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    _server = get_config().server
    uvicorn.run(
        "upload_relay.main:app",
        host=_server.host,
        port=_server.port,
        reload=_server.reload,
    )
