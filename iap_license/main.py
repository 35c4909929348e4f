"""FastAPI application factory and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from iap_license import __version__
from iap_license.api.data import KIND_STORAGE
from iap_license.config import Config
from iap_license.exceptions import IntegrityError, InvalidClaimError
from iap_license.logging_config import configure_logging, get_logger
from iap_license.middleware import ContextMiddleware, RequestLoggingMiddleware
from iap_license.models import (
    ErrorResponse,
    ImageBlob,
    PurchaseRecord,
    StoredItem,
    TokenRecord,
)
from iap_license.repositories.data_store import DataStore, ImageStore
from iap_license.repositories.product_catalog import ProductCatalog
from iap_license.repositories.quota_ledger import QuotaLedger
from iap_license.repositories.table import TableService
from iap_license.repositories.token_store import TokenStore
from iap_license.services.authorizer import Authorizer
from iap_license.services.purchase_verifier import PurchaseVerifier
from iap_license.services.receipt_scanner import ReceiptScanner, UnconfiguredScanner
from iap_license.utils.clock import Clock

logger = get_logger(__name__)

PURCHASES_TABLE = "Licenses"
TOKENS_TABLE = "Tokens"
IMAGES_TABLE = "Images"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config: Config = app.state.config
    logger.info(
        "service_starting",
        package_name=config.package_name,
        tenant=config.service.tenant,
        debug=config.service.debug,
        storage_backend=config.storage.backend,
    )
    try:
        logger.info(
            "service_started",
            status="ready",
            products=app.state.catalog.count(),
            play_credential=app.state.verifier.has_credential,
            scanner=app.state.scanner.name,
        )
        yield
    finally:
        app.state.tables.dispose()
        logger.info("service_stopped")


def _function_name(request: Request) -> str:
    segments = [s for s in request.url.path.split("/") if s]
    return segments[0] if segments else "root"


def create_app(
    config: Optional[Config] = None,
    verifier: Optional[PurchaseVerifier] = None,
    scanner: Optional[ReceiptScanner] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Create and wire the FastAPI application.

    Every store and collaborator is built here once and hung off ``app.state``;
    tests pass their own verifier, scanner and clock.

    Args:
        config: Loaded configuration (defaults to CONFIG_PATH / config/license.yaml)
        verifier: Upstream purchase verifier (defaults to the Android Publisher API)
        scanner: Receipt OCR collaborator (defaults to an unconfigured scanner)
        clock: Time source for token expiry and audit fields

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    config = config or Config()
    clock = clock or Clock()
    tenant = config.service.tenant

    tables = TableService(config.storage, prefix=config.table_prefix)
    catalog = ProductCatalog(config.products)
    ledger = QuotaLedger(
        tables.get_table(PURCHASES_TABLE, PurchaseRecord),
        catalog,
        partition_key=tenant,
        settings=config.ledger,
        clock=clock,
    )
    token_store = TokenStore(
        tables.get_table(TOKENS_TABLE, TokenRecord),
        partition_key=tenant,
        settings=config.tokens,
        clock=clock,
    )
    if verifier is None:
        verifier = PurchaseVerifier.from_credential(
            config.verifier, config.play_credential(), debug=config.service.debug
        )
    authorizer = Authorizer(token_store, ledger, verifier, catalog, config.package_name)

    image_store = ImageStore(tables.get_table(IMAGES_TABLE, ImageBlob))
    data_stores = {
        kind: DataStore(storage, tables.get_table(storage.table_name, StoredItem), image_store)
        for kind, storage in KIND_STORAGE.items()
    }

    app = FastAPI(
        title="IAP License Service",
        description="Purchase verification, scan quota and bearer tokens for Google Play in-app purchases",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.tables = tables
    app.state.clock = clock
    app.state.catalog = catalog
    app.state.ledger = ledger
    app.state.token_store = token_store
    app.state.verifier = verifier
    app.state.authorizer = authorizer
    app.state.scanner = scanner or UnconfiguredScanner()
    app.state.image_store = image_store
    app.state.data_stores = data_stores

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware, headers=config.headers)

    from iap_license.api.data import router as data_router
    from iap_license.api.license import router as license_router
    from iap_license.api.scan import router as scan_router

    app.include_router(license_router)
    app.include_router(scan_router)
    app.include_router(data_router)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "healthy",
            "storage": tables.backend,
            "products": str(catalog.count()),
        }

    @app.exception_handler(InvalidClaimError)
    async def invalid_claim_handler(request: Request, exc: InvalidClaimError) -> JSONResponse:
        logger.warning("invalid_claim", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="invalid_claim", message=str(exc), function=_function_name(request)
            ).model_dump(),
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        logger.error(
            "ledger_integrity_error",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="ledger_integrity_error", message=str(exc), function=_function_name(request)
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred",
                function=_function_name(request),
            ).model_dump(),
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app
