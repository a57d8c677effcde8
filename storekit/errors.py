"""
StoreKit JWS error taxonomy.

Every failure raised by this package is a ``StoreKitError`` carrying a closed
``ErrorKind`` plus structured context (key id, segment index, underlying
cause) so callers can branch on failures without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    MALFORMED_ENVELOPE = "malformed_envelope"
    INVALID_ENCODING = "invalid_encoding"
    MISSING_KEY_ID = "missing_key_id"
    KEY_FETCH_FAILED = "key_fetch_failed"
    KEY_NOT_FOUND = "key_not_found"
    INVALID_KEY_ENCODING = "invalid_key_encoding"
    SIGNATURE_INVALID = "signature_invalid"
    ALGORITHM_MISMATCH = "algorithm_mismatch"
    INVALID_PRIVATE_KEY = "invalid_private_key"
    SIGNING_FAILED = "signing_failed"
    API_ERROR = "api_error"


# =============================================================================
# Base
# =============================================================================


class StoreKitError(Exception):
    """Base exception for StoreKit JWS errors."""

    kind: ErrorKind
    default_message = "StoreKit error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        key_id: Optional[str] = None,
        segment_index: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        if getattr(type(self), "kind", None) is None:
            raise TypeError(f"{type(self).__name__} is abstract, raise one of its subclasses")
        self.message = message or self.default_message
        self.key_id = key_id
        self.segment_index = segment_index
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable view of the failure."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "key_id": self.key_id,
            "segment_index": self.segment_index,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


# =============================================================================
# Envelope codec
# =============================================================================


class MalformedEnvelope(StoreKitError):
    """Raised when a compact envelope is not three non-empty segments or its JSON is unusable."""

    kind = ErrorKind.MALFORMED_ENVELOPE
    default_message = "Malformed compact envelope"


class InvalidEncoding(StoreKitError):
    """Raised when a segment is not valid unpadded base64url."""

    kind = ErrorKind.INVALID_ENCODING
    default_message = "Invalid base64url encoding"


# =============================================================================
# Key resolution
# =============================================================================


class MissingKeyId(StoreKitError):
    """Raised when an envelope header carries no ``kid``."""

    kind = ErrorKind.MISSING_KEY_ID
    default_message = "Envelope header has no key identifier"


class KeyResolutionFailed(StoreKitError):
    """
    Common parent of the failures raised while resolving a key id.

    Abstract: catch it, raise ``KeyFetchFailed`` or ``KeyNotFound``.
    """

    default_message = "Could not resolve verification key"


class KeyFetchFailed(KeyResolutionFailed):
    """Raised when the published key set cannot be fetched or parsed."""

    kind = ErrorKind.KEY_FETCH_FAILED
    default_message = "Failed to fetch published key set"


class KeyNotFound(KeyResolutionFailed):
    """Raised when a key id is absent after a successful fetch."""

    kind = ErrorKind.KEY_NOT_FOUND
    default_message = "No published key matches the key identifier"


class InvalidKeyEncoding(StoreKitError):
    """Raised when published key material cannot be reconstructed."""

    kind = ErrorKind.INVALID_KEY_ENCODING
    default_message = "Invalid published key encoding"


# =============================================================================
# Verification
# =============================================================================


class SignatureInvalid(StoreKitError):
    """Raised when the signature does not match the signing input."""

    kind = ErrorKind.SIGNATURE_INVALID
    default_message = "Signature verification failed"


class AlgorithmMismatch(StoreKitError):
    """Raised when the header algorithm is not usable with the resolved key."""

    kind = ErrorKind.ALGORITHM_MISMATCH
    default_message = "Declared algorithm does not match the verification key"


# =============================================================================
# Issuance
# =============================================================================


class InvalidPrivateKey(StoreKitError):
    """Raised when the signing key is not a PEM encoded EC P-256 private key."""

    kind = ErrorKind.INVALID_PRIVATE_KEY
    default_message = "Invalid EC private key"


class SigningFailed(StoreKitError):
    """Raised when the signing operation itself fails."""

    kind = ErrorKind.SIGNING_FAILED
    default_message = "Failed to sign authorization token"


# =============================================================================
# HTTP client
# =============================================================================


class ApiError(StoreKitError):
    """Raised when the subscription-status API answers with a non-success status."""

    kind = ErrorKind.API_ERROR
    default_message = "App Store Server API request failed"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data
