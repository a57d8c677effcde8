"""
Compact envelope codec.

Splits and joins the three-segment JWS compact serialization
(``header.payload.signature``) and converts segments to and from bytes and
JSON. Nothing in this module verifies signatures; see ``storekit.verifier``.
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

from storekit.claims import ClaimSet, MapClaims, T
from storekit.errors import InvalidEncoding, MalformedEnvelope

_B64URL = re.compile(r"[A-Za-z0-9_-]*")

SEGMENT_NAMES = ("header", "payload", "signature")


@dataclass(frozen=True)
class CompactEnvelope:
    """A parsed, not yet verified, compact envelope."""

    header_segment: str
    payload_segment: str
    signature_segment: str
    header: Dict[str, Any]
    payload: bytes
    signature: bytes

    @property
    def algorithm(self) -> Optional[str]:
        alg = self.header.get("alg")
        return alg if isinstance(alg, str) and alg else None

    @property
    def key_id(self) -> Optional[str]:
        kid = self.header.get("kid")
        return kid if isinstance(kid, str) and kid else None

    @property
    def signing_input(self) -> bytes:
        return f"{self.header_segment}.{self.payload_segment}".encode("ascii")

    def serialize(self) -> str:
        return join(self.header_segment, self.payload_segment, self.signature_segment)


# =============================================================================
# Segments
# =============================================================================


def decode_segment(segment: str, index: Optional[int] = None) -> bytes:
    """
    Decode an unpadded base64url segment.

    Raises:
        InvalidEncoding: On characters outside the URL-safe alphabet,
            padding, or an impossible length.
    """
    if not isinstance(segment, str) or not _B64URL.fullmatch(segment) or len(segment) % 4 == 1:
        raise InvalidEncoding(
            f"Segment {_segment_name(index)} is not valid base64url",
            segment_index=index,
        )
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (ValueError, TypeError) as e:
        raise InvalidEncoding(
            f"Segment {_segment_name(index)} is not valid base64url: {e}",
            segment_index=index,
            cause=e,
        ) from e


def encode_segment(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _segment_name(index: Optional[int]) -> str:
    if index is None or not 0 <= index < len(SEGMENT_NAMES):
        return "segment"
    return SEGMENT_NAMES[index]


# =============================================================================
# JSON
# =============================================================================


def decode_json(data: bytes, shape: Optional[Type[T]] = None, index: Optional[int] = None) -> Any:
    """
    Decode a JSON object, optionally into a claim set shape.

    Unknown members are ignored and missing members keep their defaults when a
    ``shape`` is given.

    Raises:
        MalformedEnvelope: If the bytes are not a UTF-8 JSON object, or a member
            does not have the type ``shape`` declares for it.
    """
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(
            f"{_segment_name(index).capitalize()} is not valid JSON: {e}",
            segment_index=index,
            cause=e,
        ) from e
    if not isinstance(obj, dict):
        raise MalformedEnvelope(
            f"{_segment_name(index).capitalize()} is not a JSON object",
            segment_index=index,
        )
    if shape is None:
        return obj
    return shape.from_dict(obj)


def encode_json(obj: Any) -> bytes:
    """Compact, key-sorted JSON bytes."""
    if isinstance(obj, ClaimSet):
        obj = obj.to_dict()
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# =============================================================================
# Compact serialization
# =============================================================================


def split(compact: str) -> CompactEnvelope:
    """
    Parse a compact envelope into its segments.

    Raises:
        MalformedEnvelope: Unless the input is exactly three non-empty
            dot-separated segments with a JSON object header.
        InvalidEncoding: If a segment is not valid base64url.
    """
    if not isinstance(compact, str):
        raise MalformedEnvelope("Compact envelope must be a string")
    if compact != compact.strip():
        raise MalformedEnvelope("Compact envelope has leading or trailing whitespace")
    parts = compact.split(".")
    if len(parts) != 3:
        raise MalformedEnvelope(f"Expected 3 segments, got {len(parts)}")
    for index, part in enumerate(parts):
        if not part:
            raise MalformedEnvelope(
                f"The {SEGMENT_NAMES[index]} segment is empty", segment_index=index
            )

    header_bytes, payload, signature = (decode_segment(p, i) for i, p in enumerate(parts))
    header = decode_json(header_bytes, index=0)

    return CompactEnvelope(
        header_segment=parts[0],
        payload_segment=parts[1],
        signature_segment=parts[2],
        header=header,
        payload=payload,
        signature=signature,
    )


def join(header_segment: str, payload_segment: str, signature_segment: str) -> str:
    """Join encoded segments into the compact form."""
    return ".".join((header_segment, payload_segment, signature_segment))


def decode_unverified(
    compact: str, shape: Type[T] = MapClaims  # type: ignore[assignment]
) -> Tuple[Dict[str, Any], T]:
    """
    Decode header and payload without checking the signature.

    The result must not drive business decisions; use
    ``EnvelopeVerifier.verify`` for that.
    """
    envelope = split(compact)
    return envelope.header, decode_json(envelope.payload, shape, index=1)
