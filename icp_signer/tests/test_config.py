import pytest
from pydantic import ValidationError

from icp_signer.app.core.config import Settings

from icp_signer.tests.fixtures.fakes import make_settings


def test_defaults():
    settings = make_settings(records_endpoint=None)

    assert settings.signature_hex_length == 8192
    assert settings.signature_reason == "Assinatura Digital ICP-Brasil"
    assert settings.signature_location == "Brasil"
    assert settings.max_pdf_bytes == 25 * 1024 * 1024
    assert settings.records_endpoint is None


def test_token_is_redacted():
    settings = make_settings()

    assert "documenso-api-token" not in repr(settings)
    assert settings.document_store_token.get_secret_value() == "documenso-api-token"


def test_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("ICP_SIGNER_DOCUMENT_STORE_URL", "https://docs.example.org")
    monkeypatch.setenv("ICP_SIGNER_DOCUMENT_STORE_TOKEN", "env-token")
    monkeypatch.setenv("ICP_SIGNER_SIGNATURE_HEX_LENGTH", "16384")

    settings = Settings(_env_file=None)

    assert str(settings.document_store_url).startswith("https://docs.example.org")
    assert settings.signature_hex_length == 16384


def test_document_store_is_required(monkeypatch):
    monkeypatch.delenv("ICP_SIGNER_DOCUMENT_STORE_URL", raising=False)
    monkeypatch.delenv("ICP_SIGNER_DOCUMENT_STORE_TOKEN", raising=False)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


@pytest.mark.parametrize("length", [8193, 512, 70000])
def test_signature_hex_length_bounds(length):
    with pytest.raises(ValidationError):
        make_settings(signature_hex_length=length)


def test_blank_reason_is_rejected():
    with pytest.raises(ValidationError):
        make_settings(signature_reason="   ")
