"""
Clients for the external collaborators of the signing engine.

    DocumentStoreClient      downloads the original PDF bytes by id
                             (Documenso-compatible v1 API, bearer token)
    SignatureRecordClient    records the signature status through the
                             CRUD webhook (best effort)

Both share the application's persistent ``httpx.AsyncClient``; timeouts
are configured on that client. Neither retries: a failed fetch is reported
to the caller, who may resubmit the same request.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from icp_signer.app.core.config import Settings
from icp_signer.app.core.errors import (
    DocumentTooLargeError,
    DocumentUnavailableError,
    InputError,
)

logger = logging.getLogger("icp_signer.collaborators")

# resource ids are path segments; restrict them to prevent path injection
DOCUMENT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


# ----------------------------------------------------------------------
# Interfaces consumed by the dispatcher
# ----------------------------------------------------------------------

class DocumentStore(Protocol):
    async def download(self, document_id: str, *, correlation_id: str) -> bytes:
        ...


class SignatureRecordStore(Protocol):
    async def mark_signed(
        self,
        signature_id: str,
        *,
        signed_at: datetime,
        certificate_info: Dict[str, Any],
        correlation_id: str,
    ) -> None:
        ...


# ----------------------------------------------------------------------
# Document store
# ----------------------------------------------------------------------

class DocumentStoreClient:
    """
    Downloads source PDFs from the document store.

    The body is streamed and the read stops as soon as it exceeds
    ``max_pdf_size_mb``; a declared Content-Length over the limit is
    rejected before any byte is read.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self.client = http_client
        self.base_url = str(settings.document_store_url).rstrip("/")
        self._token = settings.document_store_token
        self.max_bytes = settings.max_pdf_bytes

    def _url(self, document_id: str) -> str:
        if not DOCUMENT_ID_PATTERN.fullmatch(document_id):
            raise InputError(f"Identificador de documento inválido: {document_id!r}.")
        return f"{self.base_url}/api/v1/documents/{quote(document_id, safe='')}/download"

    def _too_large(self, document_id: str) -> DocumentTooLargeError:
        return DocumentTooLargeError(
            f"O documento {document_id} excede o limite de "
            f"{self.max_bytes // (1024 * 1024)}MB."
        )

    async def download(self, document_id: str, *, correlation_id: str) -> bytes:
        url = self._url(document_id)
        headers = {
            "Authorization": f"Bearer {self._token.get_secret_value()}",
            "Accept": "application/pdf",
            "X-Correlation-ID": correlation_id,
        }

        try:
            async with self.client.stream(
                "GET", url, headers=headers, follow_redirects=True
            ) as response:
                if not response.is_success:
                    logger.warning(
                        "document_download_failed",
                        extra={
                            "trace_id": correlation_id,
                            "document_id": document_id,
                            "status": response.status_code,
                        },
                    )
                    raise DocumentUnavailableError(
                        f"Erro ao baixar o PDF do documento {document_id}: "
                        f"HTTP {response.status_code}"
                    )

                declared = response.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise self._too_large(document_id)

                content = bytearray()
                async for chunk in response.aiter_bytes():
                    content.extend(chunk)
                    if len(content) > self.max_bytes:
                        raise self._too_large(document_id)
        except httpx.HTTPError as exc:
            logger.warning(
                "document_download_transport_error",
                extra={
                    "trace_id": correlation_id,
                    "document_id": document_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise DocumentUnavailableError(
                f"Erro ao baixar o PDF do documento {document_id}: {exc}"
            ) from exc

        if not content:
            raise DocumentUnavailableError(
                f"O documento {document_id} retornou um PDF vazio."
            )

        logger.info(
            "document_downloaded",
            extra={
                "trace_id": correlation_id,
                "document_id": document_id,
                "size": len(content),
            },
        )
        return bytes(content)


# ----------------------------------------------------------------------
# Signature records
# ----------------------------------------------------------------------

class SignatureRecordClient:
    """
    Reports completed signatures to the persistence webhook.

    Failures are logged and swallowed: a completed signature is never
    rolled back because its status could not be recorded.
    """

    TABLE = "document_signatures"

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self.client = http_client
        self.endpoint: Optional[str] = (
            str(settings.records_endpoint) if settings.records_endpoint else None
        )

    async def mark_signed(
        self,
        signature_id: str,
        *,
        signed_at: datetime,
        certificate_info: Dict[str, Any],
        correlation_id: str,
    ) -> None:
        if self.endpoint is None:
            logger.info(
                "signature_record_skipped",
                extra={"trace_id": correlation_id, "signature_id": signature_id},
            )
            return

        body = {
            "action": "update",
            "table": self.TABLE,
            "payload": {
                "id": signature_id,
                "status": "signed",
                "signed_at": signed_at.isoformat(),
                "certificate_info": json.dumps(certificate_info),
            },
        }

        try:
            response = await self.client.post(
                self.endpoint,
                json=body,
                headers={"X-Correlation-ID": correlation_id},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "signature_record_update_failed",
                extra={
                    "trace_id": correlation_id,
                    "signature_id": signature_id,
                    "error_type": type(exc).__name__,
                },
            )
            return

        logger.info(
            "signature_record_updated",
            extra={"trace_id": correlation_id, "signature_id": signature_id},
        )
