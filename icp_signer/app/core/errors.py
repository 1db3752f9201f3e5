"""
Error taxonomy for the ICP-Brasil signing engine.

Domain code raises these exceptions; only the dispatcher's fault boundary
converts them into the response envelope. Messages are operator-facing and
are shown verbatim in the product UI.

Hierarchy:

    SignerError
      InputError
      CertificateError
        MalformedCertificateError
        WrongPassphraseError
        NoCertificateError
        NoPrivateKeyError
        CertificateExpiredError
      SigningError
        DocumentUnavailableError
        DocumentTooLargeError
        MalformedSourceError
        SignatureTooLargeError
      InternalError
"""


class SignerError(Exception):
    """Base class for every failure the engine reports to callers."""

    code = "signer_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(SignerError):
    """A required request field is missing or malformed."""

    code = "invalid_input"


# ---------------------------------------------------------------------------
# Certificate failures
# ---------------------------------------------------------------------------

class CertificateError(SignerError):
    code = "certificate_error"


class MalformedCertificateError(CertificateError):
    code = "certificate_malformed"


class WrongPassphraseError(CertificateError):
    code = "wrong_passphrase"


class NoCertificateError(CertificateError):
    code = "no_certificate"


class NoPrivateKeyError(CertificateError):
    code = "no_private_key"


class CertificateExpiredError(CertificateError):
    """Terminal: the operator has to obtain a new certificate."""

    code = "certificate_expired"


# ---------------------------------------------------------------------------
# Signing failures
# ---------------------------------------------------------------------------

class SigningError(SignerError):
    code = "signing_error"


class DocumentUnavailableError(SigningError):
    code = "document_unavailable"


class DocumentTooLargeError(SigningError):
    code = "document_too_large"


class MalformedSourceError(SigningError):
    code = "malformed_source"


class SignatureTooLargeError(SigningError):
    """
    Terminal: the CMS structure does not fit the reserved placeholder.
    The signature is never truncated.
    """

    code = "signature_too_large"

    def __init__(self, message: str, *, required: int, reserved: int):
        super().__init__(message)
        self.required = required
        self.reserved = reserved


class InternalError(SignerError):
    code = "internal_error"
