"""
StoreKit JWS - Signed envelopes for the App Store Server API.

This package mints ES256 authorization tokens for the App Store Server API
and verifies the App Store's signed transaction and renewal payloads against
its published, rotating key set.
"""

__version__ = "1.0.0"

# Envelope codec
from .envelope import CompactEnvelope, decode_unverified, split

# Claims
from .claims import (
    AuthorizationClaims,
    ClaimSet,
    MapClaims,
    RenewalInfoClaims,
    TransactionClaims,
)

# Keys and verification
from .keys import KeyDirectory, KeyMaterial, HttpKeySetFetcher, get_key_directory
from .verifier import EnvelopeVerifier, verify_renewal_info, verify_transaction

# Issuance
from .issuer import AuthorizationContext, AuthorizationIssuer, issue

# Errors
from .errors import (
    ErrorKind,
    StoreKitError,
    MalformedEnvelope,
    InvalidEncoding,
    MissingKeyId,
    KeyResolutionFailed,
    KeyFetchFailed,
    KeyNotFound,
    InvalidKeyEncoding,
    SignatureInvalid,
    AlgorithmMismatch,
    InvalidPrivateKey,
    SigningFailed,
    ApiError,
)


# HTTP client (lazy import, it is only needed by callers of the status API)
def __getattr__(name):
    """Lazy loading of the subscription-status client."""
    if name in ("SubscriptionStatusClient", "status_query", "subscriptions_url"):
        from . import client

        return getattr(client, name)
    elif name in ("StatusResponse", "SubscriptionGroupIdentifierItem", "LastTransactionsItem", "SubscriptionStatus"):
        from . import models

        return getattr(models, name)
    elif name == "StoreKitConfig":
        from .config import StoreKitConfig

        return StoreKitConfig
    raise AttributeError(f"module 'storekit' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Envelope
    "CompactEnvelope",
    "split",
    "decode_unverified",
    # Claims
    "ClaimSet",
    "MapClaims",
    "AuthorizationClaims",
    "RenewalInfoClaims",
    "TransactionClaims",
    # Keys and verification
    "KeyDirectory",
    "KeyMaterial",
    "HttpKeySetFetcher",
    "get_key_directory",
    "EnvelopeVerifier",
    "verify_transaction",
    "verify_renewal_info",
    # Issuance
    "AuthorizationContext",
    "AuthorizationIssuer",
    "issue",
    # Client (lazy loaded)
    "SubscriptionStatusClient",
    "StoreKitConfig",
    "StatusResponse",
    "SubscriptionGroupIdentifierItem",
    "LastTransactionsItem",
    "SubscriptionStatus",
    # Errors
    "ErrorKind",
    "StoreKitError",
    "MalformedEnvelope",
    "InvalidEncoding",
    "MissingKeyId",
    "KeyResolutionFailed",
    "KeyFetchFailed",
    "KeyNotFound",
    "InvalidKeyEncoding",
    "SignatureInvalid",
    "AlgorithmMismatch",
    "InvalidPrivateKey",
    "SigningFailed",
    "ApiError",
]
