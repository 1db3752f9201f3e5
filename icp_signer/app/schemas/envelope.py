"""
Request and response envelopes of the ``api_icp_sign`` webhook.

Wire names are camelCase (``signatureId``, ``certificateInfo`` ...) for
compatibility with the mobile/web client; Python attributes are snake_case.
Fields left as ``None`` are omitted from serialized responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel

from icp_signer.app.services.certificate_loader import SignerCertificate


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

ResourceId = Annotated[
    str,
    Field(
        pattern=r"^[A-Za-z0-9_-]{1,64}$",
        description="Record or document id. Restricted to prevent path injection",
    ),
]


class SignRequest(_CamelModel):
    """
    Webhook request body. A single ``action`` field selects the operation.
    """

    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = None
    certificate: Optional[str] = None
    password: Optional[SecretStr] = None
    signature_id: Optional[ResourceId] = None
    documenso_document_id: Optional[ResourceId] = None

    @field_validator("signature_id", "documenso_document_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Union[str, int, None]) -> Optional[str]:
        # the client sends numeric Documenso ids
        if isinstance(v, bool):
            raise ValueError("identifier must be a string or an integer")
        if isinstance(v, int):
            return str(v)
        return v


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------

class CertificateInfo(_CamelModel):
    subject: str
    issuer: str
    serial: str
    valid_from: datetime
    valid_to: datetime
    cpf: Optional[str] = None
    cnpj: Optional[str] = None
    name: str
    is_valid: bool
    days_until_expiry: int

    @classmethod
    def from_certificate(cls, cert: SignerCertificate) -> "CertificateInfo":
        return cls(
            subject=cert.subject,
            issuer=cert.issuer,
            serial=cert.serial_hex,
            valid_from=cert.not_before,
            valid_to=cert.not_after,
            cpf=cert.tax_ids.cpf.formatted if cert.tax_ids.cpf else None,
            cnpj=cert.tax_ids.cnpj.formatted if cert.tax_ids.cnpj else None,
            name=cert.name,
            is_valid=cert.is_valid,
            days_until_expiry=cert.days_until_expiry,
        )


class SignResponse(_CamelModel):
    success: bool
    certificate_info: Optional[CertificateInfo] = None
    signed_at: Optional[datetime] = None
    signed_pdf_base64: Optional[str] = Field(default=None, repr=False)
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
