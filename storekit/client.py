"""
App Store Server API client for subscription status.

Attaches a freshly issued (or reused) ES256 bearer token to each request and
decodes the response. Signed payloads inside the response are returned as-is;
verify them with ``storekit.verifier.EnvelopeVerifier``.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from storekit.claims import RenewalInfoClaims, TransactionClaims
from storekit.config import HTTP_TIMEOUT, StoreKitConfig
from storekit.errors import ApiError
from storekit.issuer import AuthorizationIssuer
from storekit.models import LastTransactionsItem, StatusResponse
from storekit.verifier import EnvelopeVerifier

logger = logging.getLogger(__name__)

# Refresh the cached bearer token this long before it expires.
TOKEN_REUSE_MARGIN_SECONDS = 60


def status_query(status: Iterable[int], key: str = "status") -> str:
    """
    Build a repeated query string, e.g. ``status=1&status=4``.

    Returns an empty string for no values.
    """
    return "&".join(f"{key}={int(value)}" for value in status)


def subscriptions_url(base_url: str, transaction_id: str, status: Iterable[int] = ()) -> str:
    """URL of the Get All Subscription Statuses endpoint."""
    if not transaction_id:
        raise ValueError("transaction_id is required")
    url = f"{base_url.rstrip('/')}/inApps/v1/subscriptions/{quote(transaction_id, safe='')}"
    query = status_query(status)
    return f"{url}?{query}" if query else url


class SubscriptionStatusClient:
    """
    Synchronous client for the subscription-status endpoint.

    Example:
        >>> config = StoreKitConfig.from_env()
        >>> with SubscriptionStatusClient(config) as client:
        ...     response = client.get_all_subscription_statuses("2000000123456789", 1, 4)
        ...     for transaction, renewal in client.verify_response(response):
        ...         print(transaction.product_id, renewal.auto_renew_enabled)
    """

    def __init__(
        self,
        config: StoreKitConfig,
        issuer: Optional[AuthorizationIssuer] = None,
        verifier: Optional[EnvelopeVerifier] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        """
        Args:
            config: Credentials and environment.
            issuer: Token issuer; defaults to one built from ``config`` that
                reuses tokens until shortly before expiry.
            verifier: Verifier for ``verify_response``; defaults to one using
                the process-wide Key Directory.
            http_client: Optional pooled client. Closed by ``close()`` only if
                this instance created it.
            timeout: Request timeout in seconds.
        """
        self.config = config
        self.issuer = issuer or AuthorizationIssuer(
            config.authorization_context(), reuse_margin_seconds=TOKEN_REUSE_MARGIN_SECONDS
        )
        self.verifier = verifier or EnvelopeVerifier()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout))

    def __enter__(self) -> "SubscriptionStatusClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def get_all_subscription_statuses(self, transaction_id: str, *status: int) -> StatusResponse:
        """
        Fetch the statuses of all subscriptions of a customer.

        Args:
            transaction_id: Any original or current transaction id of the customer.
            *status: Optional status filters (e.g. 1 for active, 4 for grace period).

        Raises:
            ApiError: On a transport error, a non-200 answer or an unreadable body.
            InvalidPrivateKey, SigningFailed: If the bearer token cannot be issued.
        """
        url = subscriptions_url(self.config.base_url, transaction_id, status)
        logger.debug(f"method: GET, url: {url}")

        try:
            response = self._client.get(url, headers=self.issuer.authorization_header())
        except httpx.HTTPError as e:
            raise ApiError(f"Request to {url} failed: {e}", cause=e) from e

        if response.status_code != 200:
            raise ApiError(
                f"App Store Server API returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError("Response body is not valid JSON", status_code=200, cause=e) from e
        if not isinstance(data, dict):
            raise ApiError("Response body is not a JSON object", status_code=200)

        return StatusResponse.from_dict(data)

    def verify_item(self, item: LastTransactionsItem) -> Tuple[TransactionClaims, RenewalInfoClaims]:
        """Verify both signed payloads of one subscription."""
        transaction = self.verifier.verify_transaction(item.signed_transaction_info)
        renewal = self.verifier.verify_renewal_info(item.signed_renewal_info)
        return transaction, renewal

    def verify_response(self, response: StatusResponse) -> List[Tuple[TransactionClaims, RenewalInfoClaims]]:
        """Verify every subscription in a response; the first failure propagates."""
        return [self.verify_item(item) for item in response.last_transactions()]
