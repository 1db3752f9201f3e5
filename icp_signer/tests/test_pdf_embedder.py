from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization

from icp_signer.app.core.errors import (
    CertificateExpiredError,
    MalformedSourceError,
    SignatureTooLargeError,
)
from icp_signer.app.services.certificate_loader import describe_certificate
from icp_signer.app.services.pdf_embedder import (
    BYTE_RANGE_PLACEHOLDER,
    SIGNATURE_HEX_LENGTH,
    SignatureMetadata,
    complete_signature,
    embed_signature,
    highest_object_id,
    pdf_date,
    pdf_text_string,
    prepare_signature,
)
from icp_signer.app.services.signing_key import SigningKey

from icp_signer.tests.fixtures.pdf_factory import (
    encrypted_pdf,
    minimal_pdf,
    reopen,
    signature_dictionary,
    verify_signature,
)
from icp_signer.tests.fixtures.pki_factory import make_identity


SIGNED_AT = datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def identity():
    return make_identity("JOAO DA SILVA:12345678901")


@pytest.fixture
def signer(identity):
    return describe_certificate(identity.leaf)


def _metadata(**overrides):
    values = dict(
        signer_name="JOAO DA SILVA:12345678901",
        contact="joao@example.com.br",
        signing_time=SIGNED_AT,
    )
    values.update(overrides)
    return SignatureMetadata(**values)


# ------------------------------------------------------------------
# End to end
# ------------------------------------------------------------------

def test_signed_pdf_verifies_against_signer_certificate(identity, signer):
    source = minimal_pdf()

    signed = embed_signature(
        source,
        signer,
        SigningKey(identity.key),
        [identity.ca],
        metadata=_metadata(),
    )

    sig = verify_signature(signed, identity.leaf)

    leaf_der = identity.leaf.public_bytes(serialization.Encoding.DER)
    assert leaf_der in sig.certificates
    assert sig.byte_range[2] + sig.byte_range[3] == len(signed)


def test_original_bytes_are_preserved(identity, signer):
    source = minimal_pdf()

    signed = embed_signature(source, signer, SigningKey(identity.key))

    assert signed[: len(source)] == source
    assert signed.endswith(b"%%EOF\n")


def test_signed_length_is_source_plus_appended_section(identity, signer):
    source = minimal_pdf()
    metadata = _metadata()

    pending = prepare_signature(source, metadata)
    signed = embed_signature(
        source, signer, SigningKey(identity.key), [identity.ca], metadata=metadata
    )

    assert len(signed) == len(source) + pending.appended_length
    assert len(pending.data) == len(signed)
    start, first_len, second_offset, second_len = pending.byte_range
    assert signed[:first_len] == pending.data[:first_len]
    assert signed[second_offset:] == pending.data[second_offset:]


def test_signed_pdf_is_still_a_readable_pdf(identity, signer):
    source = minimal_pdf(title="Contrato 42")

    signed = embed_signature(source, signer, SigningKey(identity.key))
    before, after = reopen(source), reopen(signed)

    assert after["pages"] == 1
    assert after["title"] == "Contrato 42"
    assert after["root"] == before["root"]
    assert after["size"] > before["size"]


def test_expired_certificate_is_refused(identity):
    expired = describe_certificate(
        identity.leaf,
        identity.leaf.not_valid_after_utc + timedelta(days=1),
    )

    with pytest.raises(CertificateExpiredError, match="Certificado expirado em"):
        embed_signature(minimal_pdf(), expired, SigningKey(identity.key))


# ------------------------------------------------------------------
# Phase 1
# ------------------------------------------------------------------

def test_prepare_reserves_fixed_width_contents():
    source = minimal_pdf()

    pending = prepare_signature(source, _metadata())

    start, first_len, second_offset, second_len = pending.byte_range
    assert start == 0
    assert second_offset - first_len == SIGNATURE_HEX_LENGTH + 2
    assert pending.reserved_hex_length == SIGNATURE_HEX_LENGTH
    assert second_offset + second_len == len(pending.data)
    assert len(pending.data) == len(source) + pending.appended_length
    assert pending.data[first_len:second_offset] == (
        b"<" + b"0" * SIGNATURE_HEX_LENGTH + b">"
    )


def test_byte_range_overwrites_placeholder_in_place():
    pending = prepare_signature(minimal_pdf(), _metadata())

    assert b"/**********" not in pending.data
    expected = b"/ByteRange [%d %d %d %d]" % pending.byte_range
    field = expected.ljust(len(BYTE_RANGE_PLACEHOLDER), b" ")
    assert field in pending.data


def test_object_id_follows_highest_existing_object():
    source = minimal_pdf()

    pending = prepare_signature(source, _metadata())

    assert pending.object_id == highest_object_id(source) + 1
    assert b"\n%d 0 obj\n" % pending.object_id in pending.data


def test_signature_dictionary_fields():
    pending = prepare_signature(
        minimal_pdf(),
        _metadata(reason="Aprovação (final)", location="São Paulo"),
    )

    text = signature_dictionary(pending.data)

    assert b"/Filter /Adobe.PPKLite" in text
    assert b"/SubFilter /adbe.pkcs7.detached" in text
    assert b"/M (D:20260314150926Z)" in text
    assert b"/Name (JOAO DA SILVA:12345678901)" in text
    assert b"/Reason (Aprova\xe7\xe3o \\(final\\))" in text
    assert b"/Location (S\xe3o Paulo)" in text
    assert b"/ContactInfo (joao@example.com.br)" in text


def test_incremental_trailer_points_back_to_previous_xref():
    source = minimal_pdf()
    previous = int(source.rsplit(b"startxref", 1)[1].split()[0])

    pending = prepare_signature(source, _metadata())
    appended = pending.data[len(source):]

    assert b"/Prev %d" % previous in appended
    assert b"/Root " in appended
    assert b"/ID [<" in appended
    xref_offset = int(appended.rsplit(b"startxref", 1)[1].split()[0])
    assert pending.data[xref_offset:xref_offset + 4] == b"xref"


def test_phase_one_is_deterministic():
    source = minimal_pdf()

    first = prepare_signature(source, _metadata())
    second = prepare_signature(source, _metadata())

    assert first == second


def test_odd_reserved_width_is_rejected():
    with pytest.raises(ValueError):
        prepare_signature(minimal_pdf(), _metadata(), signature_hex_length=1001)


@pytest.mark.parametrize(
    "source",
    [
        b"",
        b"not a pdf at all",
        b"%PDF-1.4\n%%EOF\n",
        b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n",
    ],
)
def test_malformed_source_is_rejected(source):
    with pytest.raises(MalformedSourceError):
        prepare_signature(source, _metadata())


def test_encrypted_source_is_rejected():
    with pytest.raises(MalformedSourceError):
        prepare_signature(encrypted_pdf(), _metadata())


# ------------------------------------------------------------------
# Phase 2
# ------------------------------------------------------------------

def test_short_signature_is_zero_padded():
    pending = prepare_signature(minimal_pdf(), _metadata())

    out = complete_signature(pending, b"\x30\x03\x02\x01\x01")

    first_len = pending.byte_range[1]
    assert len(out) == len(pending.data)
    assert out[first_len + 1:first_len + 11] == b"3003020101"
    assert out[first_len + 11:first_len + 1 + SIGNATURE_HEX_LENGTH] == (
        b"0" * (SIGNATURE_HEX_LENGTH - 10)
    )
    assert out[:first_len] == pending.data[:first_len]


def test_signature_exactly_filling_the_reservation():
    pending = prepare_signature(
        minimal_pdf(), _metadata(), signature_hex_length=1024
    )

    out = complete_signature(pending, b"\xab" * 512)

    assert len(out) == len(pending.data)
    assert b"<" + b"ab" * 512 + b">" in out


def test_oversized_signature_is_never_truncated():
    pending = prepare_signature(
        minimal_pdf(), _metadata(), signature_hex_length=1024
    )

    with pytest.raises(SignatureTooLargeError) as excinfo:
        complete_signature(pending, b"\x00" * 513)

    assert excinfo.value.required == 1026
    assert excinfo.value.reserved == 1024


def test_real_cms_overflowing_small_reservation(identity, signer):
    with pytest.raises(SignatureTooLargeError):
        embed_signature(
            minimal_pdf(),
            signer,
            SigningKey(identity.key),
            [identity.ca],
            signature_hex_length=1024,
        )


# ------------------------------------------------------------------
# Syntax helpers
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "value, expected",
    [
        ("simples", b"(simples)"),
        ("a(b)c", b"(a\\(b\\)c)"),
        ("C:\\certs", b"(C:\\\\certs)"),
        ("linha\r", b"(linha\\r)"),
    ],
)
def test_pdf_text_string_escaping(value, expected):
    assert pdf_text_string(value) == expected


def test_pdf_text_string_falls_back_to_utf16():
    encoded = pdf_text_string("Łukasz")

    assert encoded.startswith(b"(\xfe\xff")
    assert "Łukasz".encode("utf-16-be") in encoded


def test_pdf_date_is_utc():
    local = datetime(2026, 3, 14, 12, 9, 26, tzinfo=timezone(timedelta(hours=-3)))

    assert pdf_date(local) == b"D:20260314150926Z"
    assert pdf_date(datetime(2026, 1, 2, 3, 4, 5)) == b"D:20260102030405Z"
