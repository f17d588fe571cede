"""HMAC signature verification for payment gateway callbacks.

The gateway signs a callback by concatenating the values of a fixed, ordered
list of fields and computing an HMAC over that string. Nested objects are
addressed with dot-separated keys (``order.id``, ``source_data.pan``).

``flatten_and_concatenate`` builds that base string and is a pure function.
``SignatureVerifier`` holds the secret and compares digests in constant time.

Security contract:
- Comparison uses ``hmac.compare_digest``.
- A missing signature is rejected, never treated as valid.
- An unset secret rejects every callback (fail-closed).
- Failures never reveal which field or which part of the digest differed.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from apps.orders.errors import SignatureError

logger = logging.getLogger(__name__)

# Field order for the server-to-server "processed" callback.
PROCESSED_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

# Browser redirect callback: the gateway sends the order id as a bare ``order``
# query parameter, in the same position as ``order.id`` above.
REDIRECT_FIELDS = tuple("order" if f == "order.id" else f for f in PROCESSED_FIELDS)


def flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dot-separated keys; lists stay as leaves."""
    out: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            out.update(flatten(value, name))
        else:
            out[name] = value
    return out


def _stringify(value: Any) -> str:
    # Mirrors how the gateway renders values: lowercase booleans, compact JSON
    # arrays, integral numbers without a decimal part.
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def flatten_and_concatenate(ordered_fields: Sequence[str], data: Mapping[str, Any]) -> str:
    """Build the HMAC base string for ``data`` following ``ordered_fields``.

    Args:
        ordered_fields: Field names in signing order; dots address nested
            values.
        data: Callback payload, nested or already flat.

    Returns:
        The concatenated values. Missing or null fields contribute ``""``.
    """
    flat = flatten(data)
    return "".join(_stringify(flat.get(field)) for field in ordered_fields)


class SignatureVerifier:
    """Computes and checks callback HMACs with a server-held secret.

    Args:
        secret: Shared HMAC secret configured with the gateway.
        digest: hashlib algorithm name, ``sha256`` by default.
    """

    def __init__(self, secret: str, digest: str = "sha256"):
        hashlib.new(digest)  # ValueError for an unknown algorithm
        self._secret = (secret or "").encode("utf-8")
        self.digest = digest

    def compute(self, ordered_fields: Sequence[str], data: Mapping[str, Any]) -> str:
        base = flatten_and_concatenate(ordered_fields, data)
        return hmac.new(self._secret, base.encode("utf-8"), self.digest).hexdigest()

    def is_valid(self, ordered_fields: Sequence[str], data: Mapping[str, Any], signature: Optional[str]) -> bool:
        if not signature or not self._secret:
            return False
        expected = self.compute(ordered_fields, data)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))

    def verify(self, ordered_fields: Sequence[str], data: Mapping[str, Any], signature: Optional[str]) -> None:
        """Raise ``SignatureError`` unless ``signature`` matches ``data``."""
        if not signature:
            raise SignatureError("Missing signature", code="MISSING_SIGNATURE")
        if not self._secret:
            logger.warning("gateway HMAC secret not configured, rejecting callback")
            raise SignatureError("Invalid signature")
        if not self.is_valid(ordered_fields, data, signature):
            raise SignatureError("Invalid signature")
