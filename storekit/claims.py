"""
Typed claim sets decoded from envelope payloads.

Every claim set exposes the same temporal accessors (``expires_at``,
``issued_at``, ``not_before``) and identity accessors (``issuer``,
``subject``, ``audience``) so a single verification routine can serve all
payload shapes.

Decoding is lenient about shape and strict about types: unknown JSON members
are ignored and missing members take their zero/absent default, because the
App Store adds fields over time, but a member whose JSON type does not match
the field is rejected with ``MalformedEnvelope``.
"""

from __future__ import annotations

import dataclasses
import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from storekit.errors import MalformedEnvelope

T = TypeVar("T", bound="ClaimSet")

# Issuer reported for App Store signed payloads, which carry no ``iss`` member.
APPLE_ISSUER = "Apple"

PAYLOAD_SEGMENT = 1


def _json(name: str, default: Any = None, factory: Any = None):
    """Declare a dataclass field bound to a camelCase JSON member."""
    if factory is not None:
        return field(default_factory=factory, metadata={"json": name})
    return field(default=default, metadata={"json": name})


def _from_timestamp(seconds: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # Outside the platform's representable range
        return None


def from_millis(value: Any) -> Optional[datetime]:
    """Convert an App Store millisecond timestamp to an aware datetime (0/None -> None)."""
    if not value or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return _from_timestamp(value / 1000)


def from_seconds(value: Any) -> Optional[datetime]:
    """Convert a JWT NumericDate to an aware datetime."""
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return _from_timestamp(value)


# =============================================================================
# Type checking of decoded members
# =============================================================================


@functools.lru_cache(maxsize=None)
def _field_types(cls: type) -> Dict[str, Any]:
    return get_type_hints(cls)


def _matches(value: Any, hint: Any) -> bool:
    """True if a decoded JSON value fits the annotated field type."""
    if hint is Any:
        return True
    origin = get_origin(hint)
    if origin is Union:
        return any(_matches(value, arg) for arg in get_args(hint) if arg is not type(None))
    if origin is list:
        args = get_args(hint)
        return isinstance(value, list) and (not args or all(_matches(v, args[0]) for v in value))
    if origin is dict:
        return isinstance(value, dict)
    # bool is a subclass of int, JSON true/false is never a number
    if hint is bool:
        return isinstance(value, bool)
    if hint is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if hint is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(hint, type):
        return isinstance(value, hint)
    return True


def _type_name(hint: Any) -> str:
    if isinstance(hint, type):
        return hint.__name__
    return str(hint).replace("typing.", "")


# =============================================================================
# Base
# =============================================================================


@dataclass
class ClaimSet:
    """Base for all decoded payloads."""

    @classmethod
    def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
        """
        Build the claim set from a decoded JSON object.

        Members are matched by their JSON name; ``null`` and missing members
        keep the field default.

        Raises:
            MalformedEnvelope: If a member's JSON type does not match its field.
        """
        types = _field_types(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            name = f.metadata.get("json", f.name)
            value = data.get(name)
            if value is None:
                continue
            hint = types.get(f.name, Any)
            if not _matches(value, hint):
                raise MalformedEnvelope(
                    f"Payload member {name!r} must be {_type_name(hint)}, got {type(value).__name__}",
                    segment_index=PAYLOAD_SEGMENT,
                )
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to JSON member names, dropping absent values."""
        out = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is not None:
                out[f.metadata.get("json", f.name)] = value
        return out

    # Temporal claims

    @property
    def expires_at(self) -> Optional[datetime]:
        return None

    @property
    def issued_at(self) -> Optional[datetime]:
        return None

    @property
    def not_before(self) -> Optional[datetime]:
        return None

    # Identity claims

    @property
    def issuer(self) -> Optional[str]:
        return None

    @property
    def subject(self) -> Optional[str]:
        return None

    @property
    def audience(self) -> Optional[List[str]]:
        return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True if ``expires_at`` is set and in the past. Never called by the verifier."""
        expires = self.expires_at
        if expires is None:
            return False
        return (now or datetime.now(timezone.utc)) >= expires


# =============================================================================
# Generic
# =============================================================================


@dataclass
class MapClaims(ClaimSet):
    """Untyped claims, used to inspect a payload before its shape is known."""

    claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MapClaims":
        return cls(claims=dict(data))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.claims)

    def get(self, name: str, default: Any = None) -> Any:
        return self.claims.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.claims[name]

    def __contains__(self, name: object) -> bool:
        return name in self.claims

    @property
    def expires_at(self) -> Optional[datetime]:
        return from_seconds(self.claims.get("exp"))

    @property
    def issued_at(self) -> Optional[datetime]:
        return from_seconds(self.claims.get("iat"))

    @property
    def not_before(self) -> Optional[datetime]:
        return from_seconds(self.claims.get("nbf"))

    @property
    def issuer(self) -> Optional[str]:
        iss = self.claims.get("iss")
        return iss if isinstance(iss, str) else None

    @property
    def subject(self) -> Optional[str]:
        sub = self.claims.get("sub")
        return sub if isinstance(sub, str) else None

    @property
    def audience(self) -> Optional[List[str]]:
        return _audience(self.claims.get("aud"))


def _audience(value: Any) -> Optional[List[str]]:
    # ``aud`` may be a single string or an array of strings
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    return None


# =============================================================================
# Outbound authorization token
# =============================================================================


@dataclass
class AuthorizationClaims(ClaimSet):
    """Claims of the token minted for the App Store Server API."""

    iss: str = ""
    iat: int = 0
    exp: int = 0
    aud: Union[str, List[str]] = ""
    bid: str = ""

    @property
    def bundle_id(self) -> str:
        return self.bid

    @property
    def expires_at(self) -> Optional[datetime]:
        return from_seconds(self.exp) if self.exp else None

    @property
    def issued_at(self) -> Optional[datetime]:
        return from_seconds(self.iat) if self.iat else None

    @property
    def issuer(self) -> Optional[str]:
        return self.iss or None

    @property
    def audience(self) -> Optional[List[str]]:
        return _audience(self.aud) if self.aud else None


# =============================================================================
# App Store signed payloads
# =============================================================================


@dataclass
class _AppStorePayload(ClaimSet):
    """Identity/temporal mapping shared by App Store signed payloads."""

    @property
    def issuer(self) -> Optional[str]:
        return APPLE_ISSUER

    @property
    def subject(self) -> Optional[str]:
        return getattr(self, "bundle_id", "") or None

    @property
    def audience(self) -> Optional[List[str]]:
        product_id = getattr(self, "product_id", "")
        return [product_id] if product_id else None

    @property
    def issued_at(self) -> Optional[datetime]:
        return from_millis(getattr(self, "signed_date", 0))

    @property
    def expires_at(self) -> Optional[datetime]:
        return from_millis(getattr(self, "expires_date", 0))


@dataclass
class RenewalInfoClaims(_AppStorePayload):
    """Decoded ``signedRenewalInfo`` payload of an auto-renewable subscription."""

    # Transaction identifiers
    original_transaction_id: str = _json("originalTransactionId", "")
    transaction_id: str = _json("transactionId", "")
    web_order_line_item_id: str = _json("webOrderLineItemId", "")

    bundle_id: str = _json("bundleId", "")
    app_account_token: Optional[str] = _json("appAccountToken")

    # Product
    product_id: str = _json("productId", "")
    type: str = _json("type", "")
    subscription_group_identifier: str = _json("subscriptionGroupIdentifier", "")
    quantity: Optional[int] = _json("quantity")
    price: Optional[int] = _json("price")
    currency: str = _json("currency", "")

    # Storefront
    storefront: str = _json("storefront", "")
    storefront_id: str = _json("storefrontId", "")

    # Offers
    eligible_win_back_offer_ids: List[str] = _json("eligibleWinBackOfferIds", factory=list)
    offer_type: int = _json("offerType", 0)
    offer_discount_type: str = _json("offerDiscountType", "")
    offer_identifier: str = _json("offerIdentifier", "")

    # Purchase dates (milliseconds since epoch)
    original_purchase_date: int = _json("originalPurchaseDate", 0)
    purchase_date: int = _json("purchaseDate", 0)
    recent_subscription_start_date: int = _json("recentSubscriptionStartDate", 0)

    # Billing
    is_in_billing_retry_period: bool = _json("isInBillingRetryPeriod", False)
    grace_period_expires_date: int = _json("gracePeriodExpiresDate", 0)

    # Renewal and expiration
    auto_renew_status: int = _json("autoRenewStatus", 0)
    auto_renew_product_id: str = _json("autoRenewProductId", "")
    expiration_intent: int = _json("expirationIntent", 0)
    expires_date: int = _json("expiresDate", 0)
    is_upgraded: bool = _json("isUpgraded", False)
    renewal_date: int = _json("renewalDate", 0)
    renewal_price: int = _json("renewalPrice", 0)

    in_app_ownership_type: str = _json("inAppOwnershipType", "")
    price_increase_status: int = _json("priceIncreaseStatus", 0)

    revocation_date: int = _json("revocationDate", 0)
    revocation_reason: str = _json("revocationReason", "")
    transaction_reason: str = _json("transactionReason", "")

    signed_date: int = _json("signedDate", 0)
    environment: str = _json("environment", "")

    @property
    def auto_renew_enabled(self) -> bool:
        return self.auto_renew_status == 1

    @property
    def renews_at(self) -> Optional[datetime]:
        return from_millis(self.renewal_date)

    @property
    def grace_period_expires_at(self) -> Optional[datetime]:
        return from_millis(self.grace_period_expires_date)


@dataclass
class TransactionClaims(_AppStorePayload):
    """Decoded ``signedTransactionInfo`` payload."""

    original_transaction_id: str = _json("originalTransactionId", "")
    transaction_id: str = _json("transactionId", "")
    web_order_line_item_id: str = _json("webOrderLineItemId", "")

    app_apple_id: int = _json("appAppleId", 0)
    bundle_id: str = _json("bundleId", "")
    product_id: str = _json("productId", "")
    subscription_group_identifier: str = _json("subscriptionGroupIdentifier", "")
    type: str = _json("type", "")
    quantity: Optional[int] = _json("quantity")
    app_account_token: Optional[str] = _json("appAccountToken")
    in_app_ownership_type: str = _json("inAppOwnershipType", "")

    price: Optional[int] = _json("price")
    currency: str = _json("currency", "")

    storefront: str = _json("storefront", "")
    storefront_id: str = _json("storefrontId", "")

    purchase_date: int = _json("purchaseDate", 0)
    original_purchase_date: int = _json("originalPurchaseDate", 0)
    expires_date: int = _json("expiresDate", 0)

    is_upgraded: bool = _json("isUpgraded", False)
    offer_type: Optional[int] = _json("offerType")
    offer_identifier: Optional[str] = _json("offerIdentifier")
    offer_discount_type: str = _json("offerDiscountType", "")

    revocation_date: int = _json("revocationDate", 0)
    revocation_reason: Optional[int] = _json("revocationReason")
    transaction_reason: str = _json("transactionReason", "")

    signed_date: int = _json("signedDate", 0)
    environment: str = _json("environment", "")

    @property
    def purchased_at(self) -> Optional[datetime]:
        return from_millis(self.purchase_date)

    @property
    def revoked_at(self) -> Optional[datetime]:
        return from_millis(self.revocation_date)

    @property
    def is_revoked(self) -> bool:
        return bool(self.revocation_date)
