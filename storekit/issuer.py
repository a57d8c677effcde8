"""
StoreKit Authorization Issuer - Mints ES256 bearer tokens for the App Store Server API.

Each token identifies the caller by issuer id and bundle id, names the signing
key in its ``kid`` header and is valid for a fixed 30 minutes.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from jwcrypto import jwk, jws
from jwcrypto.common import json_encode

from storekit.envelope import encode_json
from storekit.errors import InvalidPrivateKey, SigningFailed

logger = logging.getLogger(__name__)

AUDIENCE = "appstoreconnect-v1"
SIGNING_ALGORITHM = "ES256"
TOKEN_LIFETIME_SECONDS = 30 * 60


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Signing identity for one issuance.

    Attributes:
        key_id: Private key ID from App Store Connect (e.g. 2X9R4HXF34).
        issuer_id: Issuer ID from the App Store Connect keys page.
        bundle_id: The app's bundle identifier.
        private_key: PEM encoded EC P-256 private key. Excluded from repr.
    """

    key_id: str
    issuer_id: str
    bundle_id: str
    private_key: Union[str, bytes] = field(repr=False)


def load_signing_key(private_key: Union[str, bytes]) -> jwk.JWK:
    """
    Load a PEM encoded EC P-256 private key.

    Raises:
        InvalidPrivateKey: If the PEM does not load, holds no private part or
            is not a P-256 key.
    """
    if not private_key:
        raise InvalidPrivateKey("Private key is empty")
    data = private_key.encode("utf-8") if isinstance(private_key, str) else private_key

    try:
        key = jwk.JWK.from_pem(data)
    except Exception as e:
        raise InvalidPrivateKey(f"Could not load PEM private key: {e}", cause=e) from e

    if not key.has_private:
        raise InvalidPrivateKey("PEM holds a public key, not a private key")
    if key.key_type != "EC" or key.get("crv") != "P-256":
        raise InvalidPrivateKey(
            f"Key must be an EC P-256 key, got {key.key_type} {key.get('crv') or ''}".rstrip()
        )
    return key


def _validate(ctx: AuthorizationContext) -> None:
    for name in ("key_id", "issuer_id", "bundle_id"):
        if not getattr(ctx, name):
            raise ValueError(f"Authorization context requires '{name}'")


def _sign(ctx: AuthorizationContext, key: jwk.JWK, issued_at: int) -> str:
    claims = {
        "iss": ctx.issuer_id,
        "iat": issued_at,
        "exp": issued_at + TOKEN_LIFETIME_SECONDS,
        "aud": AUDIENCE,
        "bid": ctx.bundle_id,
    }
    protected_header = {"alg": SIGNING_ALGORITHM, "kid": ctx.key_id, "typ": "JWT"}

    try:
        token = jws.JWS(encode_json(claims))
        token.add_signature(key, None, json_encode(protected_header), None)
        return token.serialize(compact=True)
    except Exception as e:
        raise SigningFailed(f"Failed to sign authorization token: {e}", key_id=ctx.key_id, cause=e) from e


def issue(ctx: AuthorizationContext, now: Optional[float] = None) -> str:
    """
    Mint a fresh authorization token.

    Args:
        ctx: Signing identity.
        now: Issue time as a Unix timestamp (defaults to the current time).

    Returns:
        The compact serialized token, for ``Authorization: Bearer <token>``.

    Raises:
        ValueError: If an identity field is empty.
        InvalidPrivateKey: If ``ctx.private_key`` is not an EC P-256 private key.
        SigningFailed: If signing fails.
    """
    _validate(ctx)
    key = load_signing_key(ctx.private_key)
    issued_at = int(now if now is not None else time.time())
    return _sign(ctx, key, issued_at)


class AuthorizationIssuer:
    """
    Issues tokens for one signing identity, optionally reusing the last one.

    The private key is parsed once. With ``reuse_margin_seconds`` set, the last
    token is handed out again until it is within that many seconds of expiry.

    Example:
        >>> issuer = AuthorizationIssuer(ctx, reuse_margin_seconds=60)
        >>> headers = issuer.authorization_header()
    """

    def __init__(self, ctx: AuthorizationContext, reuse_margin_seconds: Optional[int] = None):
        """
        Args:
            ctx: Signing identity.
            reuse_margin_seconds: Enable reuse, refreshing this long before
                expiry. ``None`` issues a fresh token on every call.

        Raises:
            ValueError: If an identity field is empty or the margin exceeds the lifetime.
            InvalidPrivateKey: If the private key is unusable.
        """
        _validate(ctx)
        if reuse_margin_seconds is not None and not 0 <= reuse_margin_seconds < TOKEN_LIFETIME_SECONDS:
            raise ValueError(
                f"reuse_margin_seconds must be between 0 and {TOKEN_LIFETIME_SECONDS - 1}"
            )
        self._ctx = ctx
        self._key = load_signing_key(ctx.private_key)
        self._margin = reuse_margin_seconds
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0

    @property
    def key_id(self) -> str:
        return self._ctx.key_id

    def token(self, now: Optional[float] = None) -> str:
        """Return a valid token, reusing the previous one when allowed."""
        current = int(now if now is not None else time.time())
        with self._lock:
            if self._margin is not None and self._token and current < self._expires_at - self._margin:
                return self._token
            token = _sign(self._ctx, self._key, current)
            self._token = token
            self._expires_at = current + TOKEN_LIFETIME_SECONDS
            logger.debug(f"Issued authorization token for key {self._ctx.key_id}")
            return token

    def authorization_header(self, now: Optional[float] = None) -> Dict[str, str]:
        """``{"Authorization": "Bearer <token>"}``"""
        return {"Authorization": f"Bearer {self.token(now)}"}
