"""Plain response shapes of the App Store Server API subscription-status endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterator, List, Mapping, Optional


class SubscriptionStatus(IntEnum):
    """Values of ``lastTransactions[].status``."""

    ACTIVE = 1
    EXPIRED = 2
    BILLING_RETRY = 3
    BILLING_GRACE_PERIOD = 4
    REVOKED = 5


@dataclass
class LastTransactionsItem:
    """Most recent signed transaction and renewal info of one subscription."""

    original_transaction_id: str = ""
    status: int = 0
    signed_renewal_info: str = ""
    signed_transaction_info: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LastTransactionsItem":
        return cls(
            original_transaction_id=data.get("originalTransactionId") or "",
            status=data.get("status") or 0,
            signed_renewal_info=data.get("signedRenewalInfo") or "",
            signed_transaction_info=data.get("signedTransactionInfo") or "",
        )

    @property
    def subscription_status(self) -> Optional[SubscriptionStatus]:
        try:
            return SubscriptionStatus(self.status)
        except ValueError:
            return None


@dataclass
class SubscriptionGroupIdentifierItem:
    """Subscriptions of one subscription group."""

    subscription_group_identifier: str = ""
    last_transactions: List[LastTransactionsItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SubscriptionGroupIdentifierItem":
        raw = data.get("lastTransactions") or []
        # Accept a single object as well as the documented array.
        if isinstance(raw, Mapping):
            raw = [raw]
        return cls(
            subscription_group_identifier=data.get("subscriptionGroupIdentifier") or "",
            last_transactions=[LastTransactionsItem.from_dict(t) for t in raw if isinstance(t, Mapping)],
        )


@dataclass
class StatusResponse:
    """Response of ``GET /inApps/v1/subscriptions/{transactionId}``."""

    data: List[SubscriptionGroupIdentifierItem] = field(default_factory=list)
    environment: str = ""
    app_apple_id: Optional[int] = None
    bundle_id: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StatusResponse":
        return cls(
            data=[
                SubscriptionGroupIdentifierItem.from_dict(item)
                for item in data.get("data") or []
                if isinstance(item, Mapping)
            ],
            environment=data.get("environment") or "",
            app_apple_id=data.get("appAppleId"),
            bundle_id=data.get("bundleId") or "",
        )

    def last_transactions(self) -> Iterator[LastTransactionsItem]:
        """Iterate over every subscription across all groups."""
        for group in self.data:
            yield from group.last_transactions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [
                {
                    "subscriptionGroupIdentifier": group.subscription_group_identifier,
                    "lastTransactions": [
                        {
                            "originalTransactionId": t.original_transaction_id,
                            "status": t.status,
                            "signedRenewalInfo": t.signed_renewal_info,
                            "signedTransactionInfo": t.signed_transaction_info,
                        }
                        for t in group.last_transactions
                    ],
                }
                for group in self.data
            ],
            "environment": self.environment,
            "appAppleId": self.app_apple_id,
            "bundleId": self.bundle_id,
        }
