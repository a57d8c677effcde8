"""
Shared pytest fixtures for StoreKit JWS tests.
"""

import json
import threading
import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwcrypto import jwk, jws
from jwcrypto.common import json_encode

from storekit.envelope import encode_json
from storekit.issuer import AuthorizationContext
from storekit.keys import KeyDirectory

APPLE_KID = "AB12"
ORIGINAL_TRANSACTION_ID = "2000000123456789"


class CountingFetcher:
    """Key set fetch stub that counts calls and can be slowed down."""

    def __init__(self, document=None, delay: float = 0.0, error: Exception = None):
        self.document = document
        self.delay = delay
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.document


@pytest.fixture(scope="session")
def rsa_key() -> jwk.JWK:
    """RSA signing key standing in for the App Store's private key."""
    return jwk.JWK.generate(kty="RSA", size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> jwk.JWK:
    """An unrelated RSA key."""
    return jwk.JWK.generate(kty="RSA", size=2048)


@pytest.fixture
def apple_jwk(rsa_key) -> dict:
    """Published entry for ``rsa_key``, shaped like Apple's key set."""
    public = json.loads(rsa_key.export_public())
    public.update({"kid": APPLE_KID, "use": "sig", "alg": "RS256"})
    return public


@pytest.fixture
def jwks_document(apple_jwk) -> dict:
    """Apple-style key set with ``kid="AB12"``."""
    return {"keys": [apple_jwk]}


@pytest.fixture
def fetcher(jwks_document) -> CountingFetcher:
    return CountingFetcher(jwks_document)


@pytest.fixture
def directory(fetcher) -> KeyDirectory:
    return KeyDirectory(fetcher)


@pytest.fixture
def sign_envelope(rsa_key):
    """Factory signing a payload dict into a compact envelope."""

    def _sign(payload, key=None, kid=APPLE_KID, alg="RS256"):
        header = {"alg": alg}
        if kid is not None:
            header["kid"] = kid
        token = jws.JWS(encode_json(payload))
        token.add_signature(key if key is not None else rsa_key, None, json_encode(header), None)
        return token.serialize(compact=True)

    return _sign


@pytest.fixture
def renewal_payload() -> dict:
    """Sample ``signedRenewalInfo`` payload."""
    return {
        "originalTransactionId": ORIGINAL_TRANSACTION_ID,
        "autoRenewProductId": "com.example.monthly",
        "productId": "com.example.monthly",
        "autoRenewStatus": 1,
        "renewalPrice": 9990,
        "currency": "USD",
        "signedDate": 1729324800000,
        "environment": "Sandbox",
        "recentSubscriptionStartDate": 1726732800000,
        "renewalDate": 1731916800000,
        "eligibleWinBackOfferIds": ["winback_1"],
        "someFutureField": {"nested": True},
    }


@pytest.fixture
def transaction_payload() -> dict:
    """Sample ``signedTransactionInfo`` payload."""
    return {
        "transactionId": "2000000987654321",
        "originalTransactionId": ORIGINAL_TRANSACTION_ID,
        "webOrderLineItemId": "2000000055555555",
        "bundleId": "com.example.app",
        "productId": "com.example.monthly",
        "subscriptionGroupIdentifier": "21000000",
        "purchaseDate": 1729324800000,
        "originalPurchaseDate": 1726732800000,
        "expiresDate": 1731916800000,
        "quantity": 1,
        "type": "Auto-Renewable Subscription",
        "inAppOwnershipType": "PURCHASED",
        "signedDate": 1729324801000,
        "environment": "Sandbox",
        "transactionReason": "PURCHASE",
        "storefront": "USA",
        "storefrontId": "143441",
        "price": 9990,
        "currency": "USD",
    }


@pytest.fixture(scope="session")
def ec_private_pem() -> str:
    """PKCS#8 PEM EC P-256 private key, like an App Store Connect .p8 file."""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def ec_public_jwk(ec_private_pem) -> dict:
    """Published-style public entry for ``ec_private_pem``."""
    key = jwk.JWK.from_pem(ec_private_pem.encode("ascii"))
    public = json.loads(key.export_public())
    public.update({"kid": "2X9R4HXF34", "alg": "ES256", "use": "sig"})
    return public


@pytest.fixture
def auth_context(ec_private_pem) -> AuthorizationContext:
    return AuthorizationContext(
        key_id="2X9R4HXF34",
        issuer_id="57246542-96fe-1a63-e053-0824d011072a",
        bundle_id="com.example.testbundleid",
        private_key=ec_private_pem,
    )
