"""
Scrubbing container for private key material.

The PKCS#8 DER encoding of the key lives in a mutable ``bytearray`` owned by
one ``SigningKey`` instance. ``wipe()`` overwrites it with zeros; leaving the
``with`` block does the same. The key is never cached across calls.

Limitation: the ``cryptography`` key object handed out by ``private_key()``
keeps its own copy inside OpenSSL, which Python cannot scrub. Callers keep
that object local to the signing call so it is released with the frame.
"""

from __future__ import annotations

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import (
    CertificateIssuerPrivateKeyTypes,
)


class SigningKey:
    """Private key material valid for the lifetime of a single call."""

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, key: CertificateIssuerPrivateKeyTypes):
        self._buffer = bytearray(
            key.private_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        self._wiped = False

    @property
    def wiped(self) -> bool:
        return self._wiped

    def private_key(self) -> CertificateIssuerPrivateKeyTypes:
        if self._wiped:
            raise RuntimeError("signing key already released")
        return serialization.load_der_private_key(bytes(self._buffer), None)

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    def __enter__(self) -> "SigningKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "SigningKey(<redacted>)"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("SigningKey cannot be serialized")
