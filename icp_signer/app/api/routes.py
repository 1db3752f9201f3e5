import logging
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import ORJSONResponse

from icp_signer.app.services.dispatcher import SignatureDispatcher

logger = logging.getLogger("icp_signer.api")

router = APIRouter(tags=["ICP-Brasil Signing"])

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Audit trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_dispatcher(request: Request) -> SignatureDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise RuntimeError("dispatcher not initialized")
    return dispatcher


# =============================================================================
# POST /api_icp_sign
# =============================================================================

@router.post(
    "/api_icp_sign",
    summary="Validate an ICP-Brasil certificate or sign a PDF with it",
    response_class=ORJSONResponse,
)
async def api_icp_sign(
    request: Request,
    dispatcher: Annotated[SignatureDispatcher, Depends(get_dispatcher)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> ORJSONResponse:
    """
    Webhook entry point. The ``action`` field selects the operation:

    - ``validate``: read certificate metadata from a PKCS#12 bundle
    - ``sign``: sign the referenced document with the bundle
    - ``download``: not served here; use ``sign``

    Always answers HTTP 200 with the uniform envelope; failures are
    reported through ``success=false``, ``error`` and ``errorCode``.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("invalid_json_body", extra={"trace_id": correlation_id})
        payload = None

    result = await dispatcher.handle(payload, correlation_id=correlation_id)

    return ORJSONResponse(
        content=result.to_wire(),
        headers={"X-Correlation-ID": correlation_id},
    )
