"""
Stateless request dispatcher for the ICP-Brasil signing webhook.

Operations:

    validate   load the PKCS#12 bundle and report certificate metadata
    sign       load -> reject expired -> fetch source PDF -> embed
               -> report to the persistence webhook (best effort)
    download   signed PDFs are not stored here; callers must use ``sign``

Every public operation runs inside one fault boundary. ``SignerError``
subclasses become failure envelopes carrying their message and code;
anything else is classified from its message where possible and otherwise
reported as an internal error. Callers never observe a raw exception.
"""

from __future__ import annotations

import base64
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from icp_signer.app.core.config import Settings
from icp_signer.app.core.errors import (
    CertificateExpiredError,
    InputError,
    InternalError,
    SignerError,
    WrongPassphraseError,
)
from icp_signer.app.schemas.envelope import CertificateInfo, SignRequest, SignResponse
from icp_signer.app.services.certificate_loader import load_bundle
from icp_signer.app.services.collaborators import DocumentStore, SignatureRecordStore
from icp_signer.app.services.pdf_embedder import (
    SignatureMetadata,
    embed_signature,
    ensure_certificate_valid,
)

logger = logging.getLogger("icp_signer.dispatcher")

Clock = Callable[[], datetime]

_PASSPHRASE_HINT = re.compile(r"\bmac\b|password|passphrase|bad decrypt", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_exception(exc: Exception) -> SignerError:
    """Map an unexpected exception onto the error taxonomy."""
    if _PASSPHRASE_HINT.search(str(exc)):
        return WrongPassphraseError("Senha do certificado incorreta.")
    return InternalError(
        f"Erro interno ao processar a solicitação ({type(exc).__name__})."
    )


class SignatureDispatcher:
    ACTIONS = ("validate", "sign", "download")

    def __init__(
        self,
        settings: Settings,
        document_store: DocumentStore,
        signature_records: SignatureRecordStore,
        *,
        clock: Clock = _utcnow,
    ):
        self.settings = settings
        self.document_store = document_store
        self.signature_records = signature_records
        self._clock = clock

    # ------------------------------------------------------------------
    # Fault boundary
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        operation: str,
        correlation_id: Optional[str],
        call: Callable[..., Awaitable[SignResponse]],
        *args: Any,
    ) -> SignResponse:
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            return await call(*args, correlation_id=correlation_id)
        except SignerError as exc:
            logger.warning(
                "operation_rejected",
                extra={
                    "trace_id": correlation_id,
                    "operation": operation,
                    "error_code": exc.code,
                },
            )
            return self._failure(exc)
        except Exception as exc:
            error = classify_exception(exc)
            logger.exception(
                "operation_failed",
                extra={
                    "trace_id": correlation_id,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "error_code": error.code,
                },
            )
            return self._failure(error)

    @staticmethod
    def _failure(
        error: SignerError, certificate_info: Optional[CertificateInfo] = None
    ) -> SignResponse:
        return SignResponse(
            success=False,
            error=error.message,
            error_code=error.code,
            certificate_info=certificate_info,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(
        self, payload: Any, *, correlation_id: Optional[str] = None
    ) -> SignResponse:
        """Parse a raw webhook body and run the action it selects."""
        return await self._guarded("handle", correlation_id, self._handle, payload)

    async def validate(
        self,
        certificate: Optional[str],
        password: Optional[str],
        *,
        correlation_id: Optional[str] = None,
    ) -> SignResponse:
        return await self._guarded(
            "validate", correlation_id, self._validate, certificate, password
        )

    async def sign(
        self,
        signature_id: Optional[str],
        document_id: Optional[str],
        certificate: Optional[str],
        password: Optional[str],
        *,
        correlation_id: Optional[str] = None,
    ) -> SignResponse:
        return await self._guarded(
            "sign",
            correlation_id,
            self._sign,
            signature_id,
            document_id,
            certificate,
            password,
        )

    async def download(
        self,
        signature_id: Optional[str],
        *,
        correlation_id: Optional[str] = None,
    ) -> SignResponse:
        return await self._guarded(
            "download", correlation_id, self._download, signature_id
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _handle(self, payload: Any, *, correlation_id: str) -> SignResponse:
        # N8N webhook nodes wrap the request as {"body": {...}}
        if isinstance(payload, dict) and isinstance(payload.get("body"), dict):
            payload = payload["body"]
        if not isinstance(payload, dict):
            raise InputError("Corpo da requisição inválido: esperado um objeto JSON.")

        try:
            request = SignRequest.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(
                ".".join(str(loc) for loc in err["loc"]) for err in exc.errors()
            )
            raise InputError(f"Campos inválidos na requisição: {fields}.") from exc

        action = (request.action or "").strip().lower()
        password = (
            request.password.get_secret_value() if request.password else None
        )

        if action == "validate":
            return await self._validate(
                request.certificate, password, correlation_id=correlation_id
            )
        if action == "sign":
            return await self._sign(
                request.signature_id,
                request.documenso_document_id,
                request.certificate,
                password,
                correlation_id=correlation_id,
            )
        if action == "download":
            return await self._download(
                request.signature_id, correlation_id=correlation_id
            )

        raise InputError(
            f"Ação desconhecida: {request.action}. "
            f"Use: {', '.join(self.ACTIONS)}."
        )

    async def _validate(
        self,
        certificate: Optional[str],
        password: Optional[str],
        *,
        correlation_id: str,
    ) -> SignResponse:
        if not certificate or not password:
            raise InputError("Certificado e senha são obrigatórios.")

        with load_bundle(certificate, password, now=self._clock()) as bundle:
            info = CertificateInfo.from_certificate(bundle.certificate)

        logger.info(
            "certificate_validated",
            extra={"trace_id": correlation_id, "is_valid": info.is_valid},
        )
        return SignResponse(success=True, certificate_info=info)

    async def _sign(
        self,
        signature_id: Optional[str],
        document_id: Optional[str],
        certificate: Optional[str],
        password: Optional[str],
        *,
        correlation_id: str,
    ) -> SignResponse:
        if not (signature_id and document_id and certificate and password):
            raise InputError(
                "signatureId, documensoDocumentId, certificate e password "
                "são obrigatórios."
            )

        with load_bundle(certificate, password, now=self._clock()) as bundle:
            signer = bundle.certificate
            info = CertificateInfo.from_certificate(signer)

            try:
                ensure_certificate_valid(signer)
            except CertificateExpiredError as exc:
                logger.warning(
                    "certificate_not_valid",
                    extra={
                        "trace_id": correlation_id,
                        "signature_id": signature_id,
                        "valid_to": info.valid_to.isoformat(),
                    },
                )
                return self._failure(exc, certificate_info=info)

            source_pdf = await self.document_store.download(
                document_id, correlation_id=correlation_id
            )

            signed_at = self._clock()
            metadata = SignatureMetadata(
                signer_name=signer.name,
                reason=self.settings.signature_reason,
                location=self.settings.signature_location,
                contact=signer.email or "",
                signing_time=signed_at,
            )
            signed_pdf = embed_signature(
                source_pdf,
                signer,
                bundle.key,
                bundle.chain,
                metadata=metadata,
                signature_hex_length=self.settings.signature_hex_length,
            )

        await self._report(signature_id, signed_at, info, correlation_id)

        logger.info(
            "document_signed",
            extra={
                "trace_id": correlation_id,
                "signature_id": signature_id,
                "document_id": document_id,
                "signed_length": len(signed_pdf),
            },
        )
        return SignResponse(
            success=True,
            signed_at=signed_at,
            certificate_info=info,
            signed_pdf_base64=base64.b64encode(signed_pdf).decode("ascii"),
            message=(
                f"Documento assinado por {info.name} com certificado ICP-Brasil."
            ),
        )

    async def _report(
        self,
        signature_id: str,
        signed_at: datetime,
        info: CertificateInfo,
        correlation_id: str,
    ) -> None:
        try:
            await self.signature_records.mark_signed(
                signature_id,
                signed_at=signed_at,
                certificate_info=info.model_dump(mode="json", by_alias=True),
                correlation_id=correlation_id,
            )
        except Exception:
            # the signature is complete; reporting never rolls it back
            logger.warning(
                "signature_record_report_failed",
                extra={"trace_id": correlation_id, "signature_id": signature_id},
                exc_info=True,
            )

    async def _download(
        self, signature_id: Optional[str], *, correlation_id: str
    ) -> SignResponse:
        if not signature_id:
            raise InputError("signatureId é obrigatório.")
        raise InputError("Use a ação sign para gerar e obter o PDF assinado.")
