"""
StoreKit Envelope Verifier - Verifies App Store signed payloads (JWS).

The key identifier is read from the unverified header, resolved through the
Key Directory, and the signature is checked with jwcrypto before any payload
value is decoded into a typed claim set.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional, Tuple, Type

from jwcrypto import jws
from jwcrypto.common import JWException

from storekit.claims import MapClaims, RenewalInfoClaims, T, TransactionClaims
from storekit import envelope as envelope_codec
from storekit.envelope import decode_json, split
from storekit.errors import (
    AlgorithmMismatch,
    MalformedEnvelope,
    MissingKeyId,
    SignatureInvalid,
)
from storekit.keys import EC_ALGORITHMS, RSA_ALGORITHMS, KeyDirectory, get_key_directory

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHMS: FrozenSet[str] = RSA_ALGORITHMS | EC_ALGORITHMS


class EnvelopeVerifier:
    """
    Verifies compact envelopes against the published key set.

    Expiry is exposed on the returned claims but never enforced here; the
    caller decides what an expired renewal or transaction means.

    Example:
        >>> verifier = EnvelopeVerifier(KeyDirectory())
        >>> renewal = verifier.verify_renewal_info(signed_renewal_info)
        >>> renewal.original_transaction_id
    """

    def __init__(
        self,
        directory: Optional[KeyDirectory] = None,
        allowed_algorithms: FrozenSet[str] = DEFAULT_ALGORITHMS,
    ):
        """
        Args:
            directory: Key Directory used to resolve ``kid``. Defaults to the
                process-wide directory.
            allowed_algorithms: Header algorithms accepted at all.
        """
        self._directory = directory
        self._allowed = frozenset(allowed_algorithms)

    @property
    def directory(self) -> KeyDirectory:
        if self._directory is None:
            self._directory = get_key_directory()
        return self._directory

    def verify(self, compact: str, claims_type: Type[T] = MapClaims) -> T:  # type: ignore[assignment]
        """
        Verify an envelope and decode its payload into ``claims_type``.

        Raises:
            MalformedEnvelope, InvalidEncoding: If the envelope cannot be parsed.
            MissingKeyId: If the header has no ``kid``.
            KeyNotFound, KeyFetchFailed: If the key cannot be resolved.
            AlgorithmMismatch: If the header ``alg`` does not fit the key.
            SignatureInvalid: If the signature does not verify.
        """
        envelope = split(compact)

        # Inspection only; nothing below reads these values.
        unverified = decode_json(envelope.payload, MapClaims, index=1)
        logger.debug(
            f"Verifying envelope kid={envelope.key_id} alg={envelope.algorithm} "
            f"claims={sorted(unverified.claims)[:8]}"
        )

        kid = envelope.key_id
        if kid is None:
            raise MissingKeyId()

        material = self.directory.get(kid)

        alg = envelope.algorithm
        if alg not in self._allowed or not material.accepts(alg):
            raise AlgorithmMismatch(
                f"Header alg {alg!r} cannot be verified with {material.key_type} key {kid}",
                key_id=kid,
            )

        token = jws.JWS()
        try:
            token.deserialize(envelope.serialize())
        except JWException as e:
            raise MalformedEnvelope(f"Unparseable JWS: {e}", key_id=kid, cause=e) from e

        try:
            token.verify(material.jwk, alg=alg)
        except JWException as e:
            raise SignatureInvalid(key_id=kid, segment_index=2, cause=e) from e

        logger.debug(f"Signature verified with key {kid}")
        return decode_json(envelope.payload, claims_type, index=1)

    def verify_transaction(self, compact: str) -> TransactionClaims:
        """Verify a ``signedTransactionInfo`` envelope."""
        return self.verify(compact, TransactionClaims)

    def verify_renewal_info(self, compact: str) -> RenewalInfoClaims:
        """Verify a ``signedRenewalInfo`` envelope."""
        return self.verify(compact, RenewalInfoClaims)

    @staticmethod
    def decode_unverified(
        compact: str, claims_type: Type[T] = MapClaims  # type: ignore[assignment]
    ) -> Tuple[Dict[str, Any], T]:
        """
        Decode header and payload WITHOUT checking the signature.

        For logging and debugging only.
        """
        return envelope_codec.decode_unverified(compact, claims_type)


# =============================================================================
# Helpers using the process-wide directory
# =============================================================================


def verify_transaction(compact: str, directory: Optional[KeyDirectory] = None) -> TransactionClaims:
    """Verify a signed transaction with ``directory`` (or the default one)."""
    return EnvelopeVerifier(directory).verify_transaction(compact)


def verify_renewal_info(compact: str, directory: Optional[KeyDirectory] = None) -> RenewalInfoClaims:
    """Verify signed renewal info with ``directory`` (or the default one)."""
    return EnvelopeVerifier(directory).verify_renewal_info(compact)
