import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from icp_signer.app.api.routes import router as sign_router
from icp_signer.app.core.config import Settings, get_settings
from icp_signer.app.services.collaborators import (
    DocumentStoreClient,
    SignatureRecordClient,
)
from icp_signer.app.services.dispatcher import SignatureDispatcher

logger = logging.getLogger("icp_signer.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("icp-signer")
    except PackageNotFoundError:
        return "1.0.0"


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory for the ICP-Brasil signing webhook.

    ``settings`` defaults to the environment; ``transport`` replaces the
    network transport of the shared HTTP client (used by tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Guarantees:
        - Fail-fast startup if configuration is invalid
        - One shared HTTP transport for both collaborators
        - No key material or certificate state outlives a request
        """
        logger.info(
            "icp_signer_startup_begin",
            extra={"service": "icp-signer", "version": get_app_version()},
        )

        try:
            resolved = settings or get_settings()
        except Exception:
            logger.exception("invalid_signer_configuration")
            raise

        app.state.settings = resolved

        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=resolved.http_timeout_seconds,
                connect=10.0,
            ),
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=50,
            ),
            headers={"User-Agent": f"icp-signer/{get_app_version()}"},
            transport=transport,
        )

        app.state.dispatcher = SignatureDispatcher(
            settings=resolved,
            document_store=DocumentStoreClient(app.state.http_client, resolved),
            signature_records=SignatureRecordClient(app.state.http_client, resolved),
        )

        try:
            yield
        finally:
            logger.info("icp_signer_shutdown_begin")

            try:
                await app.state.http_client.aclose()
            except Exception:
                logger.warning("http_client_shutdown_failed")

    app = FastAPI(
        title="ICP-Brasil PDF Signer",
        description=(
            "Detached PKCS#7 signing of PDF documents with the signer's "
            "own ICP-Brasil PKCS#12 certificate."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Internal service; called by the workflow engine only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["POST"],
        allow_headers=["*"],
    )

    app.include_router(sign_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive.

        Does NOT load certificates or call collaborators.
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "icp-signer",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
            }
        )

    return app


app = create_app()
