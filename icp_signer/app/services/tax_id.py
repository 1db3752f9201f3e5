"""
Taxpayer id (CPF / CNPJ) extraction from ICP-Brasil certificates.

Extraction is an explicit, prioritized chain of extractors. For each kind
of tax id, the first extractor in the chain that yields a value wins:

    1. ICP-Brasil personal-data fields carried as SubjectAltName otherName
       entries (DOC-ICP-04):

           2.16.76.1.3.1  natural person:   DDMMYYYY + CPF(11) + NIS + RG ...
           2.16.76.1.3.4  entity responsible: same layout as 2.16.76.1.3.1
           2.16.76.1.3.3  legal entity:     CNPJ(14)

    2. Isolated 14- or 11-digit runs inside any SubjectAltName text value.

    3. A trailing ``:<11 digits>`` (CPF) or ``:<14 digits>`` (CNPJ) suffix on
       the Common Name, e.g. ``JOAO DA SILVA:12345678901``.

A certificate none of the extractors match yields an absent tax id. The
chain never guesses: fields filled with zeros (ICP-Brasil's "not informed")
and digit runs embedded in longer numbers are rejected.

Check digits are not validated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional, Tuple

from asn1crypto import core
from cryptography import x509
from cryptography.x509.oid import NameOID

logger = logging.getLogger("icp_signer.tax_id")


# ----------------------------------------------------------------------
# Typed result
# ----------------------------------------------------------------------

class TaxIdKind(str, Enum):
    CPF = "cpf"
    CNPJ = "cnpj"


_LENGTHS = {TaxIdKind.CPF: 11, TaxIdKind.CNPJ: 14}


@dataclass(frozen=True)
class TaxId:
    kind: TaxIdKind
    digits: str

    def __post_init__(self):
        if len(self.digits) != _LENGTHS[self.kind] or not self.digits.isdigit():
            raise ValueError(f"invalid {self.kind.value} digits: {self.digits!r}")

    @property
    def formatted(self) -> str:
        d = self.digits
        if self.kind is TaxIdKind.CPF:
            return f"{d[:3]}.{d[3:6]}.{d[6:9]}-{d[9:]}"
        return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"


@dataclass(frozen=True)
class TaxIdentifiers:
    cpf: Optional[TaxId] = None
    cnpj: Optional[TaxId] = None


Extractor = Callable[[x509.Certificate], Iterable[TaxId]]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

ICP_PERSON_DATA = x509.ObjectIdentifier("2.16.76.1.3.1")
ICP_ENTITY_CNPJ = x509.ObjectIdentifier("2.16.76.1.3.3")
ICP_RESPONSIBLE_DATA = x509.ObjectIdentifier("2.16.76.1.3.4")

_ISOLATED_CNPJ = re.compile(r"(?<!\d)(\d{14})(?!\d)")
_ISOLATED_CPF = re.compile(r"(?<!\d)(\d{11})(?!\d)")
_CN_SUFFIX = re.compile(r":(\d{14}|\d{11})$")


def _make(kind: TaxIdKind, digits: str) -> Optional[TaxId]:
    if not digits or set(digits) == {"0"}:
        return None
    if len(digits) != _LENGTHS[kind] or not digits.isdigit():
        return None
    return TaxId(kind, digits)


def _decode_other_name(value: bytes) -> Optional[str]:
    """
    Decode the DER value of an otherName entry into text.

    ICP-Brasil mandates OCTET STRING, but PrintableString and UTF8String
    are common in the field. An explicit ``[0]`` wrapper is unwrapped.
    """
    try:
        parsed = core.load(value)
        if parsed.class_ == 2 and parsed.tag == 0:
            parsed = core.load(parsed.contents)
    except ValueError:
        return None

    if isinstance(parsed, core.OctetString):
        return parsed.native.decode("latin-1")
    if isinstance(parsed, core.AbstractString):
        return parsed.native
    return None


def _subject_alt_names(cert: x509.Certificate) -> list:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    except ValueError as exc:
        # cryptography refuses certificates with unparsable extensions
        logger.debug("san_unparsable", extra={"error": str(exc)})
        return []
    return list(ext.value)


def _san_text_values(cert: x509.Certificate) -> Iterator[str]:
    for name in _subject_alt_names(cert):
        if isinstance(name, x509.OtherName):
            text = _decode_other_name(name.value)
            if text:
                yield text
        elif isinstance(name, x509.DirectoryName):
            for attr in name.value:
                if isinstance(attr.value, str):
                    yield attr.value
        elif isinstance(
            name,
            (x509.RFC822Name, x509.DNSName, x509.UniformResourceIdentifier),
        ):
            yield name.value


# ----------------------------------------------------------------------
# Extractors (highest priority first)
# ----------------------------------------------------------------------

def icp_brasil_other_names(cert: x509.Certificate) -> Iterator[TaxId]:
    for name in _subject_alt_names(cert):
        if not isinstance(name, x509.OtherName):
            continue

        if name.type_id in (ICP_PERSON_DATA, ICP_RESPONSIBLE_DATA):
            text = (_decode_other_name(name.value) or "").strip()
            # DDMMYYYY birth date followed by the CPF
            if len(text) >= 19 and text[:19].isdigit():
                tax_id = _make(TaxIdKind.CPF, text[8:19])
                if tax_id:
                    yield tax_id

        elif name.type_id == ICP_ENTITY_CNPJ:
            text = (_decode_other_name(name.value) or "").strip()
            tax_id = _make(TaxIdKind.CNPJ, text)
            if tax_id:
                yield tax_id


def san_digit_runs(cert: x509.Certificate) -> Iterator[TaxId]:
    for text in _san_text_values(cert):
        for match in _ISOLATED_CNPJ.finditer(text):
            tax_id = _make(TaxIdKind.CNPJ, match.group(1))
            if tax_id:
                yield tax_id
        for match in _ISOLATED_CPF.finditer(text):
            tax_id = _make(TaxIdKind.CPF, match.group(1))
            if tax_id:
                yield tax_id


def common_name_suffix(cert: x509.Certificate) -> Iterator[TaxId]:
    for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        if not isinstance(attr.value, str):
            continue
        match = _CN_SUFFIX.search(attr.value.strip())
        if not match:
            continue
        digits = match.group(1)
        kind = TaxIdKind.CPF if len(digits) == 11 else TaxIdKind.CNPJ
        tax_id = _make(kind, digits)
        if tax_id:
            yield tax_id


EXTRACTOR_CHAIN: Tuple[Extractor, ...] = (
    icp_brasil_other_names,
    san_digit_runs,
    common_name_suffix,
)


def extract_tax_ids(
    cert: x509.Certificate,
    chain: Tuple[Extractor, ...] = EXTRACTOR_CHAIN,
) -> TaxIdentifiers:
    """
    Run the extractor chain; earlier extractors take precedence per kind.
    """
    found: dict = {}
    for extractor in chain:
        for tax_id in extractor(cert):
            found.setdefault(tax_id.kind, tax_id)
        if len(found) == len(TaxIdKind):
            break

    return TaxIdentifiers(
        cpf=found.get(TaxIdKind.CPF),
        cnpj=found.get(TaxIdKind.CNPJ),
    )
