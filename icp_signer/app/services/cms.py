"""
Detached CMS (PKCS#7 SignedData) construction.

Produces the ``adbe.pkcs7.detached`` payload for the PDF /Contents entry:

    - encapsulated content absent (detached)
    - SHA-256 digest algorithm
    - signed attributes: content-type=data, message-digest, signing-time
    - signer certificate followed by the rest of the chain

The content is signed as binary: ``PKCS7Options.Binary`` disables the
S/MIME line-ending canonicalization, otherwise the digest would not match
the bytes a PDF viewer hashes.
"""

from __future__ import annotations

import logging
from typing import Iterable

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from icp_signer.app.core.errors import SigningError
from icp_signer.app.services.signing_key import SigningKey

logger = logging.getLogger("icp_signer.cms")

_SIGN_OPTIONS = [
    pkcs7.PKCS7Options.DetachedSignature,
    pkcs7.PKCS7Options.Binary,
    pkcs7.PKCS7Options.NoCapabilities,
]


def build_detached_signature(
    content: bytes,
    *,
    certificate: x509.Certificate,
    key: SigningKey,
    chain: Iterable[x509.Certificate] = (),
) -> bytes:
    """
    Sign ``content`` and return the DER-encoded ContentInfo.

    The private key object is materialized only for the duration of the
    call.
    """
    try:
        builder = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(content)
            .add_signer(certificate, key.private_key(), hashes.SHA256())
        )
        for extra in chain:
            if extra != certificate:
                builder = builder.add_certificate(extra)

        der = builder.sign(serialization.Encoding.DER, _SIGN_OPTIONS)
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        raise SigningError(
            f"Falha ao gerar a assinatura PKCS#7: {exc}"
        ) from exc

    logger.debug("cms_signed", extra={"der_length": len(der)})
    return der
