# storekit/config.py
"""
Centralized configuration for StoreKit JWS.

Endpoint values are read from environment variables with sensible defaults so
sandbox, staging and production deployments can differ without code changes.
Signing credentials are loaded on demand with ``StoreKitConfig.from_env()``.

Environment Variables:
    STOREKIT_JWKS_URL: Published key set of the App Store (default: https://appleid.apple.com/auth/keys)
    STOREKIT_HTTP_TIMEOUT: Timeout in seconds for outbound HTTP calls (default: 10)
    STOREKIT_PRODUCTION_URL: App Store Server API base URL
    STOREKIT_SANDBOX_URL: App Store Server API sandbox base URL
    STOREKIT_KEY_ID: Private key ID from App Store Connect (e.g. 2X9R4HXF34)
    STOREKIT_ISSUER_ID: Issuer ID from the App Store Connect keys page
    STOREKIT_BUNDLE_ID: Bundle ID of the app (e.g. com.example.testbundleid)
    STOREKIT_PRIVATE_KEY: PEM encoded private key
    STOREKIT_PRIVATE_KEY_PATH: Path to the .p8 file, used when STOREKIT_PRIVATE_KEY is unset
    STOREKIT_SANDBOX: "1"/"true" to target the sandbox environment
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Optional

if TYPE_CHECKING:
    from storekit.issuer import AuthorizationContext

# =============================================================================
# Key Directory
# =============================================================================

JWKS_URL: Final[str] = os.getenv(
    "STOREKIT_JWKS_URL",
    "https://appleid.apple.com/auth/keys"
)

HTTP_TIMEOUT: Final[float] = float(os.getenv("STOREKIT_HTTP_TIMEOUT", "10"))

# =============================================================================
# App Store Server API
# =============================================================================

PRODUCTION_URL: Final[str] = os.getenv(
    "STOREKIT_PRODUCTION_URL",
    "https://api.storekit.itunes.apple.com"
)

SANDBOX_URL: Final[str] = os.getenv(
    "STOREKIT_SANDBOX_URL",
    "https://api.storekit-sandbox.itunes.apple.com"
)


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StoreKitConfig:
    """
    Credentials and environment for talking to the App Store Server API.

    Attributes:
        key_id: Private key ID from App Store Connect.
        issuer_id: Issuer ID from the App Store Connect keys page.
        bundle_id: The app's bundle identifier.
        private_key: PEM encoded EC private key.
        sandbox: Target the sandbox environment.
    """

    key_id: str
    issuer_id: str
    bundle_id: str
    private_key: str
    sandbox: bool = False

    def __repr__(self) -> str:
        return (
            f"StoreKitConfig(key_id={self.key_id!r}, issuer_id={self.issuer_id!r}, "
            f"bundle_id={self.bundle_id!r}, sandbox={self.sandbox})"
        )

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self.sandbox else PRODUCTION_URL

    def authorization_context(self) -> "AuthorizationContext":
        """The signing identity for ``storekit.issuer``."""
        from storekit.issuer import AuthorizationContext

        return AuthorizationContext(
            key_id=self.key_id,
            issuer_id=self.issuer_id,
            bundle_id=self.bundle_id,
            private_key=self.private_key,
        )

    @classmethod
    def from_env(cls) -> "StoreKitConfig":
        """
        Load credentials from ``STOREKIT_*`` environment variables.

        Raises:
            ValueError: If a required variable is missing.
        """
        private_key = os.getenv("STOREKIT_PRIVATE_KEY")
        key_path = os.getenv("STOREKIT_PRIVATE_KEY_PATH")
        if not private_key and key_path:
            private_key = Path(key_path).expanduser().read_text()

        values = {
            "STOREKIT_KEY_ID": os.getenv("STOREKIT_KEY_ID"),
            "STOREKIT_ISSUER_ID": os.getenv("STOREKIT_ISSUER_ID"),
            "STOREKIT_BUNDLE_ID": os.getenv("STOREKIT_BUNDLE_ID"),
            "STOREKIT_PRIVATE_KEY": private_key,
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ValueError(f"Missing configuration: {', '.join(missing)}")

        return cls(
            key_id=values["STOREKIT_KEY_ID"],
            issuer_id=values["STOREKIT_ISSUER_ID"],
            bundle_id=values["STOREKIT_BUNDLE_ID"],
            private_key=private_key,
            sandbox=_truthy(os.getenv("STOREKIT_SANDBOX")),
        )


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================

def print_config() -> None:
    """Print current endpoint configuration (useful for debugging)."""
    print("StoreKit JWS Configuration:")
    print(f"  JWKS_URL:       {JWKS_URL}")
    print(f"  HTTP_TIMEOUT:   {HTTP_TIMEOUT}")
    print(f"  PRODUCTION_URL: {PRODUCTION_URL}")
    print(f"  SANDBOX_URL:    {SANDBOX_URL}")


if __name__ == "__main__":
    print_config()
