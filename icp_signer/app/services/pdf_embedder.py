"""
Detached signature embedding as a PDF incremental update.

The embedder never rewrites existing bytes: signature verification depends
on prior revisions being byte-identical to what was hashed. It appends one
update section to the original file:

    <N+1> 0 obj  signature dictionary (/Type /Sig, adbe.pkcs7.detached)
    xref         one-entry subsection for the new object
    trailer      /Size /Root /Info /ID of the previous trailer + /Prev
    startxref
    %%EOF

Two-phase fixed-width rewrite:

    Phase 1  ``prepare_signature``
             Append the section with a ``/ByteRange`` placeholder of fixed
             textual width and a ``/Contents`` run of filler hex digits, then
             overwrite the ByteRange placeholder in place with
             ``[0 start end total-end]``, space-padded to the same width.
             The result (``PendingSignature``) does not depend on any
             cryptographic output.

    Phase 2  ``complete_signature``
             Hex-encode the CMS structure, pad it with ``0`` to the reserved
             width, and splice it over the filler. A structure that does not
             fit raises ``SignatureTooLargeError``; it is never truncated.

Neither phase changes the total length after the section is appended, so
every offset computed in phase 1 stays valid.

Known limitation: the signature dictionary is the only new object. No
/AcroForm signature field or widget references it, so the signature is
verifiable from /ByteRange and /Contents but viewers and validators that
enumerate form fields (pyHanko's ``embedded_signatures``, the Acrobat
signature panel) do not list it.
"""

from __future__ import annotations

import binascii
import codecs
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

import pikepdf
from cryptography import x509

from icp_signer.app.core.errors import (
    CertificateExpiredError,
    DocumentTooLargeError,
    MalformedSourceError,
    SignatureTooLargeError,
)
from icp_signer.app.services.certificate_loader import SignerCertificate
from icp_signer.app.services.cms import build_detached_signature
from icp_signer.app.services.signing_key import SigningKey

logger = logging.getLogger("icp_signer.pdf_embedder")


SIGNATURE_HEX_LENGTH = 8192
BYTE_RANGE_PLACEHOLDER = b"/ByteRange [0 /********** /********** /**********]"

DEFAULT_REASON = "Assinatura Digital ICP-Brasil"
DEFAULT_LOCATION = "Brasil"

_OBJECT_HEADER = re.compile(rb"(?<!\d)(\d+)\s+\d+\s+obj\b")
_STARTXREF = re.compile(rb"startxref\s+(\d+)\s+%%EOF")


# ----------------------------------------------------------------------
# Data model
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class SignatureMetadata:
    signer_name: str
    reason: str = DEFAULT_REASON
    location: str = DEFAULT_LOCATION
    contact: str = ""
    signing_time: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclass(frozen=True)
class PendingSignature:
    """
    Phase-1 output: the extended file with /ByteRange filled in and the
    /Contents placeholder still holding filler digits.
    """

    data: bytes
    byte_range: Tuple[int, int, int, int]
    object_id: int
    appended_length: int

    @property
    def reserved_hex_length(self) -> int:
        # placeholder span includes the < > delimiters
        return self.byte_range[2] - self.byte_range[1] - 2

    def signed_content(self) -> bytes:
        """The exact bytes a verifier hashes: everything but the placeholder."""
        _, first_len, second_offset, second_len = self.byte_range
        return (
            self.data[:first_len]
            + self.data[second_offset:second_offset + second_len]
        )


@dataclass(frozen=True)
class _SourceTrailer:
    root: Tuple[int, int]
    info: Optional[Tuple[int, int]]
    file_id: Optional[Tuple[bytes, bytes]]
    size: int
    startxref: int
    max_object_id: int


# ----------------------------------------------------------------------
# PDF syntax helpers
# ----------------------------------------------------------------------

def pdf_text_string(value: str) -> bytes:
    """
    Encode ``value`` as a PDF literal string.

    Latin-1 text is written as is; anything else as UTF-16BE with BOM.
    Backslashes, parentheses and carriage returns are escaped.
    """
    try:
        raw = value.encode("latin-1")
    except UnicodeEncodeError:
        raw = codecs.BOM_UTF16_BE + value.encode("utf-16-be")

    escaped = (
        raw.replace(b"\\", b"\\\\")
        .replace(b"(", b"\\(")
        .replace(b")", b"\\)")
        .replace(b"\r", b"\\r")
    )
    return b"(" + escaped + b")"


def pdf_date(dt: datetime) -> bytes:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("D:%Y%m%d%H%M%SZ").encode("ascii")


def _ref(objgen: Tuple[int, int]) -> bytes:
    return b"%d %d R" % objgen


# ----------------------------------------------------------------------
# Source inspection
# ----------------------------------------------------------------------

def highest_object_id(pdf: bytes) -> int:
    """Largest ``<n> <g> obj`` header in the file, 0 if there is none."""
    return max(
        (int(m.group(1)) for m in _OBJECT_HEADER.finditer(pdf)),
        default=0,
    )


def _inspect_source(pdf: bytes) -> _SourceTrailer:
    if pdf.find(b"%PDF-", 0, 1024) == -1:
        raise MalformedSourceError(
            "Documento de origem inválido: cabeçalho %PDF ausente."
        )

    startxref = None
    for match in _STARTXREF.finditer(pdf):
        startxref = int(match.group(1))
    if startxref is None:
        raise MalformedSourceError(
            "Documento de origem inválido: trailer (startxref/%%EOF) ausente."
        )

    max_object_id = highest_object_id(pdf)
    if max_object_id == 0:
        raise MalformedSourceError(
            "Documento de origem inválido: nenhum objeto PDF encontrado."
        )

    try:
        with pikepdf.open(io.BytesIO(pdf)) as doc:
            if doc.is_encrypted:
                raise MalformedSourceError(
                    "Documentos PDF criptografados não podem ser assinados."
                )

            trailer = doc.trailer
            root = trailer.get("/Root")
            if root is None or not root.is_indirect:
                raise MalformedSourceError(
                    "Documento de origem inválido: trailer sem /Root."
                )

            info = trailer.get("/Info")
            file_id = trailer.get("/ID")

            return _SourceTrailer(
                root=root.objgen,
                info=info.objgen if info is not None and info.is_indirect else None,
                file_id=(
                    (bytes(file_id[0]), bytes(file_id[1]))
                    if file_id is not None and len(file_id) == 2
                    else None
                ),
                size=int(trailer.get("/Size", 0)),
                startxref=startxref,
                max_object_id=max_object_id,
            )
    except pikepdf.PasswordError as exc:
        raise MalformedSourceError(
            "Documentos PDF protegidos por senha não podem ser assinados."
        ) from exc
    except pikepdf.PdfError as exc:
        raise MalformedSourceError(
            f"Documento de origem inválido: {exc}"
        ) from exc


# ----------------------------------------------------------------------
# Phase 1
# ----------------------------------------------------------------------

def prepare_signature(
    pdf: bytes,
    metadata: SignatureMetadata,
    signature_hex_length: int = SIGNATURE_HEX_LENGTH,
) -> PendingSignature:
    """
    Append the unsigned signature update and fill in /ByteRange.

    Raises:
        MalformedSourceError: the source lacks the structure needed to
            append an incremental update safely.
    """
    if signature_hex_length <= 0 or signature_hex_length % 2:
        raise ValueError("signature_hex_length must be a positive even number")

    source = _inspect_source(pdf)
    object_id = max(source.max_object_id, source.size - 1) + 1

    out = io.BytesIO()
    out.write(pdf)
    out.write(b"\n")

    object_offset = out.tell()
    out.write(b"%d 0 obj\n<<\n" % object_id)
    out.write(b"/Type /Sig\n/Filter /Adobe.PPKLite\n/SubFilter /adbe.pkcs7.detached\n")

    byte_range_offset = out.tell()
    out.write(BYTE_RANGE_PLACEHOLDER)

    out.write(b"\n/Contents ")
    contents_start = out.tell()
    out.write(b"<" + b"0" * signature_hex_length + b">")
    contents_end = out.tell()

    out.write(b"\n/M (" + pdf_date(metadata.signing_time) + b")")
    out.write(b"\n/Name " + pdf_text_string(metadata.signer_name))
    out.write(b"\n/Reason " + pdf_text_string(metadata.reason))
    out.write(b"\n/Location " + pdf_text_string(metadata.location))
    out.write(b"\n/ContactInfo " + pdf_text_string(metadata.contact))
    out.write(b"\n>>\nendobj\n")

    xref_offset = out.tell()
    out.write(b"xref\n%d 1\n%010d 00000 n \n" % (object_id, object_offset))

    trailer = [
        b"/Size %d" % max(source.size, object_id + 1),
        b"/Root " + _ref(source.root),
    ]
    if source.info is not None:
        trailer.append(b"/Info " + _ref(source.info))
    if source.file_id is not None:
        trailer.append(
            b"/ID [<%s> <%s>]"
            % (source.file_id[0].hex().encode(), source.file_id[1].hex().encode())
        )
    trailer.append(b"/Prev %d" % source.startxref)

    out.write(b"trailer\n<< " + b" ".join(trailer) + b" >>\n")
    out.write(b"startxref\n%d\n%%%%EOF\n" % xref_offset)

    total = out.tell()
    byte_range = (0, contents_start, contents_end, total - contents_end)

    value = b"/ByteRange [%d %d %d %d]" % byte_range
    if len(value) > len(BYTE_RANGE_PLACEHOLDER):
        raise DocumentTooLargeError(
            "Documento grande demais para o campo /ByteRange."
        )
    out.seek(byte_range_offset)
    out.write(value.ljust(len(BYTE_RANGE_PLACEHOLDER), b" "))

    data = out.getvalue()
    logger.debug(
        "signature_placeholder_appended",
        extra={
            "object_id": object_id,
            "byte_range": byte_range,
            "appended_length": len(data) - len(pdf),
        },
    )

    return PendingSignature(
        data=data,
        byte_range=byte_range,
        object_id=object_id,
        appended_length=len(data) - len(pdf),
    )


# ----------------------------------------------------------------------
# Phase 2
# ----------------------------------------------------------------------

def complete_signature(pending: PendingSignature, cms_der: bytes) -> bytes:
    """
    Splice the hex-encoded CMS structure into the /Contents placeholder.

    Raises:
        SignatureTooLargeError: the encoded structure exceeds the
            reserved width.
    """
    signature_hex = binascii.hexlify(cms_der)
    reserved = pending.reserved_hex_length

    if len(signature_hex) > reserved:
        raise SignatureTooLargeError(
            "Assinatura maior que o espaço reservado no PDF "
            f"({len(signature_hex)} > {reserved} caracteres hex). "
            "Reduza a cadeia de certificados ou aumente o espaço reservado.",
            required=len(signature_hex),
            reserved=reserved,
        )

    start = pending.byte_range[1] + 1
    return (
        pending.data[:start]
        + signature_hex.ljust(reserved, b"0")
        + pending.data[start + reserved:]
    )


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

def ensure_certificate_valid(certificate: SignerCertificate) -> None:
    if certificate.is_valid:
        return
    if certificate.days_until_expiry < 0:
        raise CertificateExpiredError(
            f"Certificado expirado em {certificate.not_after.isoformat()}. "
            "Obtenha um novo certificado ICP-Brasil."
        )
    raise CertificateExpiredError(
        "Certificado ainda não é válido (válido a partir de "
        f"{certificate.not_before.isoformat()})."
    )


def embed_signature(
    pdf: bytes,
    certificate: SignerCertificate,
    key: SigningKey,
    chain: Iterable[x509.Certificate] = (),
    *,
    metadata: Optional[SignatureMetadata] = None,
    signature_hex_length: int = SIGNATURE_HEX_LENGTH,
) -> bytes:
    """
    Produce a signed copy of ``pdf``.

    Raises:
        CertificateExpiredError, MalformedSourceError, SignatureTooLargeError
    """
    ensure_certificate_valid(certificate)

    metadata = metadata or SignatureMetadata(
        signer_name=certificate.name,
        contact=certificate.email or "",
    )

    pending = prepare_signature(pdf, metadata, signature_hex_length)
    cms_der = build_detached_signature(
        pending.signed_content(),
        certificate=certificate.certificate,
        key=key,
        chain=chain,
    )
    signed = complete_signature(pending, cms_der)

    logger.info(
        "signature_embedded",
        extra={
            "object_id": pending.object_id,
            "source_length": len(pdf),
            "signed_length": len(signed),
            "cms_length": len(cms_der),
        },
    )
    return signed
