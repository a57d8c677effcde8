"""
StoreKit Key Directory.

Fetches the App Store's published JSON Web Key Set, reconstructs public keys
from their published members and caches them by key identifier for
signature verification.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwcrypto import jwk

from storekit.config import HTTP_TIMEOUT, JWKS_URL
from storekit.envelope import decode_segment
from storekit.errors import (
    InvalidEncoding,
    InvalidKeyEncoding,
    KeyFetchFailed,
    KeyNotFound,
    StoreKitError,
)

logger = logging.getLogger(__name__)

RSA_ALGORITHMS = frozenset({"RS256", "RS384", "RS512"})
EC_ALGORITHMS = frozenset({"ES256"})

# Members that only ever appear in private JWKs.
_PRIVATE_MEMBERS = frozenset({"d", "p", "q", "dp", "dq", "qi", "oth", "k"})

# Seconds after a fetch during which a lookup miss does not fetch again.
MIN_REFETCH_INTERVAL = 30.0


@dataclass(frozen=True)
class KeyMaterial:
    """
    A published public key, ready for verification.

    Attributes:
        key_id: The ``kid`` the key is published under.
        key_type: ``"RSA"`` or ``"EC"``.
        algorithm: The ``alg`` published with the key, if any.
        jwk: The public key as a jwcrypto JWK.
    """

    key_id: str
    key_type: str
    algorithm: Optional[str]
    jwk: jwk.JWK

    @property
    def family(self) -> frozenset:
        """Algorithms this key type can verify."""
        return RSA_ALGORITHMS if self.key_type == "RSA" else EC_ALGORITHMS

    def accepts(self, alg: Optional[str]) -> bool:
        """True if ``alg`` belongs to the key's family and matches its published ``alg``."""
        if not alg or alg not in self.family:
            return False
        return self.algorithm is None or self.algorithm == alg


# =============================================================================
# Reconstruction
# =============================================================================


def decode_exponent(segment: str) -> int:
    """
    Decode a published RSA exponent.

    Only 1-byte (e.g. ``AQ`` -> 1, ``Aw`` -> 3) and 3-byte
    (``AQAB`` -> 65537) big-endian encodings are accepted.

    Raises:
        InvalidKeyEncoding: For any other length or bad base64url.
    """
    try:
        raw = decode_segment(segment)
    except InvalidEncoding as e:
        raise InvalidKeyEncoding("Exponent is not valid base64url", cause=e) from e
    if len(raw) not in (1, 3):
        raise InvalidKeyEncoding(f"Unexpected exponent length: {len(raw)} bytes")
    return int.from_bytes(raw, "big")


def _decode_uint(segment: Any, member: str, kid: str) -> int:
    if not isinstance(segment, str) or not segment:
        raise InvalidKeyEncoding(f"Key {kid} has no '{member}' member", key_id=kid)
    try:
        raw = decode_segment(segment)
    except InvalidEncoding as e:
        raise InvalidKeyEncoding(
            f"Key {kid} member '{member}' is not valid base64url", key_id=kid, cause=e
        ) from e
    return int.from_bytes(raw, "big")


def reconstruct(published: Mapping[str, Any]) -> KeyMaterial:
    """
    Build ``KeyMaterial`` from one entry of a published key set.

    Private members are never read, even if present.

    Raises:
        InvalidKeyEncoding: If the entry cannot be turned into a public key.
    """
    kid = published.get("kid")
    if not isinstance(kid, str) or not kid:
        raise InvalidKeyEncoding("Published key has no 'kid'")

    kty = published.get("kty")
    alg = published.get("alg") if isinstance(published.get("alg"), str) else None

    if _PRIVATE_MEMBERS & set(published):
        logger.warning(f"Ignoring private members published with key {kid}")

    try:
        if kty == "RSA":
            n = _decode_uint(published.get("n"), "n", kid)
            e_member = published.get("e")
            if not isinstance(e_member, str):
                raise InvalidKeyEncoding(f"Key {kid} has no 'e' member", key_id=kid)
            try:
                e = decode_exponent(e_member)
            except InvalidKeyEncoding as err:
                err.key_id = kid
                raise
            public_key = rsa.RSAPublicNumbers(e, n).public_key()
        elif kty == "EC":
            if published.get("crv") != "P-256":
                raise InvalidKeyEncoding(
                    f"Key {kid} uses unsupported curve {published.get('crv')!r}", key_id=kid
                )
            x = _decode_uint(published.get("x"), "x", kid)
            y = _decode_uint(published.get("y"), "y", kid)
            public_key = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
        else:
            raise InvalidKeyEncoding(f"Key {kid} has unsupported type {kty!r}", key_id=kid)
    except ValueError as e:
        raise InvalidKeyEncoding(f"Key {kid} is not a valid public key: {e}", key_id=kid, cause=e) from e

    if alg is not None and alg not in (RSA_ALGORITHMS if kty == "RSA" else EC_ALGORITHMS):
        raise InvalidKeyEncoding(f"Key {kid} published with unsupported alg {alg!r}", key_id=kid)

    return KeyMaterial(key_id=kid, key_type=kty, algorithm=alg, jwk=jwk.JWK.from_pyca(public_key))


# =============================================================================
# Fetching
# =============================================================================


class HttpKeySetFetcher:
    """
    Fetches the published key set over HTTPS.

    Example:
        >>> fetch = HttpKeySetFetcher()
        >>> document = fetch()
        >>> [k["kid"] for k in document["keys"]]
    """

    def __init__(
        self,
        url: str = JWKS_URL,
        timeout: float = HTTP_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            url: Well-known key set URL.
            timeout: Request timeout in seconds when no client is supplied.
            client: Optional pooled client; the fetcher does not close it.
        """
        self.url = url
        self.timeout = timeout
        self._client = client

    def __call__(self) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = self._client.get(self.url, headers={"Accept": "application/json"})
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(self.url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise KeyFetchFailed(f"Failed to fetch key set from {self.url}: {e}", cause=e) from e

        if response.status_code != 200:
            raise KeyFetchFailed(
                f"Key set endpoint {self.url} returned HTTP {response.status_code}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise KeyFetchFailed(f"Key set from {self.url} is not valid JSON", cause=e) from e


KeySetFetcher = Callable[[], Mapping[str, Any]]


# =============================================================================
# Directory
# =============================================================================


class KeyDirectory:
    """
    Thread-safe cache of published verification keys.

    A lookup miss fetches the whole published set once and retries. At most one
    fetch is in flight at a time; callers that missed while another fetch ran
    re-check the cache instead of fetching again. Lookups that hit the cache
    never wait on the fetch lock.

    Entries live for the lifetime of the directory unless ``max_age`` is set,
    or the caller invalidates them. A miss within ``min_refetch_interval``
    seconds of the last fetch raises ``KeyNotFound`` without fetching again.

    Example:
        >>> directory = KeyDirectory()
        >>> material = directory.get("86D88Kf")
        >>> directory.refresh_all()  # after a rotation
    """

    def __init__(
        self,
        fetcher: Optional[KeySetFetcher] = None,
        max_age: Optional[float] = None,
        min_refetch_interval: float = MIN_REFETCH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            fetcher: Callable returning the key set document. Defaults to
                ``HttpKeySetFetcher()``.
            max_age: Seconds after which the whole set is treated as stale.
                ``None`` keeps keys until invalidated.
            min_refetch_interval: Seconds after a fetch during which a miss
                does not fetch again. ``refresh_all()`` ignores it.
            clock: Monotonic time source.
        """
        self._fetcher = fetcher or HttpKeySetFetcher()
        self._max_age = max_age
        self._min_refetch_interval = min_refetch_interval
        self._clock = clock

        # Replaced wholesale, never mutated in place, so readers need no lock.
        self._keys: Dict[str, KeyMaterial] = {}
        self._fetched_at: Optional[float] = None
        self._generation = 0
        # When True the next miss fetches regardless of min_refetch_interval.
        self._refetch_allowed = True
        self._fetch_lock = threading.Lock()
        self._stats = {
            "fetches": 0,
            "fetch_failures": 0,
            "keys_skipped": 0,
            "refetches_suppressed": 0,
        }

    def get(self, key_id: str) -> KeyMaterial:
        """
        Resolve a key id, fetching the published set on a miss.

        Raises:
            KeyNotFound: If the id is absent after a successful fetch, or
                absent from a set fetched less than ``min_refetch_interval`` ago.
            KeyFetchFailed: If the fetch fails.
        """
        if not key_id:
            raise KeyNotFound("Empty key identifier")

        generation = self._generation
        if not self._is_stale():
            material = self._keys.get(key_id)
            if material is not None:
                return material

        with self._fetch_lock:
            if self._generation != generation:
                logger.debug(f"Key set refreshed by another caller, re-checking {key_id}")
            elif self._recently_fetched():
                self._stats["refetches_suppressed"] += 1
                logger.debug(f"Key set fetched recently, not refetching for {key_id}")
            else:
                self._fetch()

        material = self._keys.get(key_id)
        if material is None:
            raise KeyNotFound(f"No published key with kid {key_id!r}", key_id=key_id)
        return material

    def refresh_all(self) -> int:
        """Force a fetch of the published set. Returns the number of keys loaded."""
        with self._fetch_lock:
            return self._fetch()

    def invalidate(self, key_id: str) -> bool:
        """Drop one key so the next lookup for it refetches the set."""
        with self._fetch_lock:
            if key_id not in self._keys:
                return False
            keys = dict(self._keys)
            del keys[key_id]
            self._keys = keys
            self._refetch_allowed = True
            logger.debug(f"Invalidated key {key_id}")
            return True

    def clear(self) -> None:
        """Drop every cached key."""
        with self._fetch_lock:
            self._keys = {}
            self._fetched_at = None
            self._refetch_allowed = True

    def register(self, material: KeyMaterial) -> None:
        """Add a key without fetching (e.g. a pinned or test key)."""
        with self._fetch_lock:
            keys = dict(self._keys)
            keys[material.key_id] = material
            self._keys = keys

    def _is_stale(self) -> bool:
        if self._max_age is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at > self._max_age

    def _recently_fetched(self) -> bool:
        if self._refetch_allowed or self._fetched_at is None or self._is_stale():
            return False
        return self._clock() - self._fetched_at < self._min_refetch_interval

    def _fetch(self) -> int:
        """Fetch and install the published set. Caller holds ``_fetch_lock``."""
        self._stats["fetches"] += 1
        try:
            document = self._fetcher()
        except StoreKitError as e:
            self._stats["fetch_failures"] += 1
            if isinstance(e, KeyFetchFailed):
                raise
            raise KeyFetchFailed(f"Key set fetch failed: {e}", cause=e) from e
        except Exception as e:
            self._stats["fetch_failures"] += 1
            raise KeyFetchFailed(f"Key set fetch failed: {e}", cause=e) from e

        entries = document.get("keys") if isinstance(document, Mapping) else None
        if not isinstance(entries, list):
            self._stats["fetch_failures"] += 1
            raise KeyFetchFailed("Key set document has no 'keys' array")

        keys: Dict[str, KeyMaterial] = {}
        for entry in entries:
            if not isinstance(entry, Mapping):
                self._stats["keys_skipped"] += 1
                logger.warning("Skipping non-object entry in key set")
                continue
            try:
                material = reconstruct(entry)
            except InvalidKeyEncoding as e:
                self._stats["keys_skipped"] += 1
                logger.warning(f"Skipping published key: {e}")
                continue
            keys[material.key_id] = material

        self._keys = keys
        self._fetched_at = self._clock()
        self._generation += 1
        self._refetch_allowed = False
        logger.info(f"Loaded {len(keys)} published keys")
        return len(keys)

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def key_ids(self) -> List[str]:
        return list(self._keys)

    @property
    def fetched_at(self) -> Optional[float]:
        return self._fetched_at

    @property
    def stats(self) -> Dict[str, int]:
        """Return fetch statistics."""
        return {**self._stats, "size": len(self._keys)}


# Process-wide default directory
_default_directory: Optional[KeyDirectory] = None
_default_lock = threading.Lock()


def get_key_directory() -> KeyDirectory:
    """Get or create the process-wide directory."""
    global _default_directory
    with _default_lock:
        if _default_directory is None:
            _default_directory = KeyDirectory()
        return _default_directory


def set_key_directory(directory: Optional[KeyDirectory]) -> Optional[KeyDirectory]:
    """Replace the process-wide directory, returning the previous one."""
    global _default_directory
    with _default_lock:
        previous = _default_directory
        _default_directory = directory
        return previous
