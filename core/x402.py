"""
x402 wire types - payment requirements and the X-PAYMENT header

Only what the agent (client side) and the payment gate (server side)
need: the "accepts" entries of a 402 body and the base64 JSON payload
carried in the X-PAYMENT header. Scheme is always "exact".
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Optional

X402_VERSION = 1
SCHEME_EXACT = "exact"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


class PaymentRequirementsError(ValueError):
    """A 402 body we cannot pay against."""
    pass


@dataclass
class PaymentRequirements:
    network: str
    max_amount_required: str
    pay_to: str
    asset: str
    resource: str = ""
    description: str = ""
    scheme: str = SCHEME_EXACT
    mime_type: str = "application/json"
    max_timeout_seconds: int = 300
    extra: dict = field(default_factory=dict)

    @property
    def raw_amount(self) -> int:
        """Required amount in base units. Raises if missing or not a positive integer."""
        value = (self.max_amount_required or "").strip()
        if not value.isdigit():
            raise PaymentRequirementsError(f"invalid maxAmountRequired {self.max_amount_required!r}")
        raw = int(value)
        if raw <= 0:
            raise PaymentRequirementsError("maxAmountRequired must be positive")
        return raw

    @property
    def fee_payer(self) -> str:
        return self.extra.get("feePayer") or ""

    @classmethod
    def from_dict(cls, d: dict) -> "PaymentRequirements":
        if not isinstance(d, dict):
            raise PaymentRequirementsError("requirements entry is not an object")
        pay_to = d.get("payTo") or ""
        if not pay_to:
            raise PaymentRequirementsError("requirements missing payTo")
        amount = d.get("maxAmountRequired")
        return cls(
            network=d.get("network") or "",
            max_amount_required="" if amount is None else str(amount),
            pay_to=pay_to,
            asset=d.get("asset") or "",
            resource=d.get("resource") or "",
            description=d.get("description") or "",
            scheme=d.get("scheme") or SCHEME_EXACT,
            mime_type=d.get("mimeType") or "application/json",
            max_timeout_seconds=int(d.get("maxTimeoutSeconds") or 300),
            extra=dict(d.get("extra") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": dict(self.extra),
        }


def select_requirements(body: dict, network: str) -> PaymentRequirements:
    """Pick the exact-scheme entry for `network` from a 402 body."""
    accepts = body.get("accepts") if isinstance(body, dict) else None
    if not accepts:
        raise PaymentRequirementsError("402 body has no accepts list")
    for entry in accepts:
        if not isinstance(entry, dict):
            continue
        if entry.get("network") == network and (entry.get("scheme") or SCHEME_EXACT) == SCHEME_EXACT:
            return PaymentRequirements.from_dict(entry)
    raise PaymentRequirementsError(f"no exact requirements for network {network}")


def payment_required_body(requirements: PaymentRequirements, error: str = "") -> dict:
    body = {"x402Version": X402_VERSION, "accepts": [requirements.to_dict()]}
    if error:
        body["error"] = error
    return body


def encode_payment_header(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()


def decode_payment_header(header: Optional[str]) -> dict:
    if not header:
        raise PaymentRequirementsError("missing payment header")
    try:
        payload = json.loads(base64.b64decode(header, validate=True))
    except (ValueError, TypeError) as e:
        raise PaymentRequirementsError(f"malformed payment header: {e}")
    if not isinstance(payload, dict) or "payload" not in payload:
        raise PaymentRequirementsError("payment header is not an x402 payload")
    return payload
