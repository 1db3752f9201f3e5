"""
PKCS#12 identity bundle loading for ICP-Brasil certificates.

Turns the base64 transport encoding of a .p12/.pfx bundle into a
``CertificateBundle``: the signer certificate with derived identity
metadata, the rest of the chain, and the private key wrapped in a
scrubbing ``SigningKey``.

Failure classification:

    - transport decoding or ASN.1 structure broken  -> MalformedCertificateError
    - structure intact, decryption / MAC rejected   -> WrongPassphraseError
    - no certificate bag                            -> NoCertificateError
    - no (shrouded) key bag                         -> NoPrivateKeyError

Loading is a pure parse-and-derive operation. Key material, bundles and
passphrases are never logged.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from asn1crypto import pkcs12 as asn1_pkcs12
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from icp_signer.app.core.errors import (
    MalformedCertificateError,
    NoCertificateError,
    NoPrivateKeyError,
    WrongPassphraseError,
)
from icp_signer.app.services.signing_key import SigningKey
from icp_signer.app.services.tax_id import TaxIdentifiers, extract_tax_ids

logger = logging.getLogger("icp_signer.certificate_loader")


# ----------------------------------------------------------------------
# Distinguished names
# ----------------------------------------------------------------------

_SHORT_NAMES = {
    NameOID.COMMON_NAME: "CN",
    NameOID.COUNTRY_NAME: "C",
    NameOID.LOCALITY_NAME: "L",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.EMAIL_ADDRESS: "E",
    NameOID.SERIAL_NUMBER: "serialNumber",
    NameOID.STREET_ADDRESS: "STREET",
    NameOID.DOMAIN_COMPONENT: "DC",
    NameOID.USER_ID: "UID",
    NameOID.TITLE: "title",
    NameOID.GIVEN_NAME: "GN",
    NameOID.SURNAME: "SN",
}


def _attribute_text(value) -> str:
    if isinstance(value, bytes):
        return value.hex()
    return value


def format_name(name: x509.Name) -> str:
    """Join RDN attributes as ``shortName=value`` in certificate order."""
    return ", ".join(
        f"{_SHORT_NAMES.get(attr.oid, attr.oid.dotted_string)}="
        f"{_attribute_text(attr.value)}"
        for attr in name
    )


def _first_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    if not attrs or not isinstance(attrs[0].value, str):
        return None
    return attrs[0].value


def format_serial(serial: int) -> str:
    """Lowercase hex with an even number of digits."""
    digits = format(serial, "x")
    return digits.zfill(len(digits) + len(digits) % 2)


# ----------------------------------------------------------------------
# Data model
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class SignerCertificate:
    certificate: x509.Certificate
    subject: str
    issuer: str
    serial_number: int
    not_before: datetime
    not_after: datetime
    name: str
    email: Optional[str]
    tax_ids: TaxIdentifiers
    is_valid: bool
    days_until_expiry: int

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def serial_hex(self) -> str:
        return format_serial(self.serial_number)


@dataclass
class CertificateBundle:
    """
    Everything extracted from one PKCS#12 container.

    Use as a context manager: leaving the block wipes the private key.
    """

    certificate: SignerCertificate
    key: SigningKey = field(repr=False)
    chain: List[x509.Certificate] = field(default_factory=list)

    def close(self) -> None:
        self.key.wipe()

    def __enter__(self) -> "CertificateBundle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def decode_bundle(bundle: Union[str, bytes]) -> bytes:
    """
    Decode the transport encoding of a bundle.

    ``str`` input is base64 (a ``data:...;base64,`` prefix is tolerated);
    ``bytes`` input is taken as raw DER.
    """
    if isinstance(bundle, bytes):
        raw = bundle
    else:
        text = bundle.strip()
        if text.startswith("data:") and "," in text:
            text = text.split(",", 1)[1]
        text = "".join(text.split())
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedCertificateError(
                "Arquivo de certificado inválido: conteúdo base64 corrompido."
            ) from exc

    if not raw:
        raise MalformedCertificateError("Arquivo de certificado vazio.")
    return raw


def _check_structure(raw: bytes) -> None:
    """Parse the outer PFX structure without decrypting anything."""
    try:
        pfx = asn1_pkcs12.Pfx.load(raw, strict=True)
        pfx["version"].native
        pfx["auth_safe"]["content_type"].native
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedCertificateError(
            "Arquivo de certificado inválido: não é um contêiner PKCS#12 (.p12/.pfx)."
        ) from exc


def _validity(
    cert: x509.Certificate, now: datetime
) -> tuple:
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    is_valid = not_before <= now <= not_after
    days = math.floor((not_after - now) / timedelta(days=1))
    return not_before, not_after, is_valid, days


def describe_certificate(
    cert: x509.Certificate, now: Optional[datetime] = None
) -> SignerCertificate:
    """Derive identity metadata from an X.509 certificate."""
    now = now or datetime.now(timezone.utc)
    subject = format_name(cert.subject)
    not_before, not_after, is_valid, days = _validity(cert, now)

    return SignerCertificate(
        certificate=cert,
        subject=subject,
        issuer=format_name(cert.issuer),
        serial_number=cert.serial_number,
        not_before=not_before,
        not_after=not_after,
        name=_first_attribute(cert.subject, NameOID.COMMON_NAME) or subject,
        email=_first_attribute(cert.subject, NameOID.EMAIL_ADDRESS),
        tax_ids=extract_tax_ids(cert),
        is_valid=is_valid,
        days_until_expiry=days,
    )


def load_bundle(
    bundle: Union[str, bytes],
    passphrase: str,
    *,
    now: Optional[datetime] = None,
) -> CertificateBundle:
    """
    Decode, decrypt and describe a PKCS#12 identity bundle.

    Raises:
        MalformedCertificateError, WrongPassphraseError,
        NoCertificateError, NoPrivateKeyError
    """
    raw = decode_bundle(bundle)
    _check_structure(raw)

    try:
        p12 = pkcs12.load_pkcs12(
            raw, passphrase.encode("utf-8") if passphrase else None
        )
    except ValueError as exc:
        raise WrongPassphraseError(
            "Senha do certificado incorreta ou arquivo PKCS#12 corrompido."
        ) from exc
    except Exception as exc:
        # cryptography surfaces unsupported PBE schemes as other error types
        raise MalformedCertificateError(
            f"Não foi possível abrir o certificado: {exc}"
        ) from exc

    # load_pkcs12 only reports a leaf in p12.cert when a key bag matches it
    if p12.key is None:
        if p12.cert is None and not p12.additional_certs:
            raise NoCertificateError("Nenhum certificado encontrado no arquivo .p12.")
        raise NoPrivateKeyError("Chave privada não encontrada no arquivo .p12.")
    if p12.cert is None:
        raise NoCertificateError("Nenhum certificado encontrado no arquivo .p12.")

    leaf = p12.cert.certificate
    chain = [
        extra.certificate
        for extra in p12.additional_certs
        if extra.certificate != leaf
    ]

    signer = describe_certificate(leaf, now)
    key = SigningKey(p12.key)

    logger.info(
        "certificate_loaded",
        extra={
            "serial": signer.serial_hex,
            "chain_length": len(chain),
            "is_valid": signer.is_valid,
            "days_until_expiry": signer.days_until_expiry,
            "has_cpf": signer.tax_ids.cpf is not None,
            "has_cnpj": signer.tax_ids.cnpj is not None,
        },
    )

    return CertificateBundle(certificate=signer, key=key, chain=chain)
