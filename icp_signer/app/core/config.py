"""
Centralized configuration management for the ICP-Brasil signer.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.

Settings are passed explicitly to the dispatcher at construction;
nothing in the signing path reads the process environment directly.
"""

from functools import lru_cache
from typing import Annotated, Optional

from pydantic import AnyHttpUrl, Field, SecretStr, StringConstraints, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]

PdfText = Annotated[
    str,
    StringConstraints(min_length=1, max_length=256, strip_whitespace=True),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if the document store is not configured.
    """

    # ---------------------------------------------------------------------
    # Document store (source PDF download)
    # ---------------------------------------------------------------------

    document_store_url: Annotated[
        AnyHttpUrl,
        Field(description="Base URL of the Documenso-compatible document API"),
    ]
    document_store_token: SensitiveEnv

    # ---------------------------------------------------------------------
    # Signature record persistence (best effort)
    # ---------------------------------------------------------------------

    records_endpoint: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description=(
                "CRUD webhook that records signature status. "
                "Reporting is skipped when unset."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Signature dictionary metadata
    # ---------------------------------------------------------------------

    signature_reason: PdfText = "Assinatura Digital ICP-Brasil"
    signature_location: PdfText = "Brasil"

    signature_hex_length: Annotated[
        int,
        Field(
            default=8192,
            ge=1024,
            le=65536,
            description=(
                "Hex characters reserved for /Contents. "
                "Half of it is the maximum DER size of the CMS structure."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    max_pdf_size_mb: Annotated[
        int,
        Field(
            default=25,
            ge=1,
            le=100,
            description="OOM protection limit for downloaded source PDFs",
        ),
    ]

    http_timeout_seconds: Annotated[
        float,
        Field(default=30.0, gt=0, le=300),
    ]

    model_config = SettingsConfigDict(
        env_prefix="ICP_SIGNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @field_validator("signature_hex_length")
    @classmethod
    def hex_length_must_be_even(cls, v: int) -> int:
        if v % 2:
            raise ValueError("signature_hex_length must be even")
        return v

    @property
    def max_pdf_bytes(self) -> int:
        return self.max_pdf_size_mb * 1024 * 1024


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Default settings provider for the application factory.
    """
    return Settings()
