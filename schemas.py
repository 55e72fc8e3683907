"""Wire documents for the x402-assured protocol.

PaymentRequirement is what an unpaid probe receives with HTTP 402.
PaymentReceipt rides back in the X-PAYMENT retry header, and
SettlementHeader comes back in X-PAYMENT-RESPONSE. Both headers are
base64-encoded JSON.
"""

import base64
import binascii
import json
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from protocol import ProtocolError, SIG_ALG


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class MirrorAd(_Wire):
    url: str = Field(min_length=1)
    sig: str = Field(min_length=1)


class AssuredExtension(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    service_id: str = Field(min_length=1)
    sla_ms: int = Field(ge=1)
    dispute_window_s: int = Field(ge=1)
    escrow_program_ref: str = Field(min_length=1)
    reputation_program_ref: str = Field(min_length=1)
    alt_service: Optional[str] = None
    sig_alg: Literal["ed25519"] = SIG_ALG
    stream: Optional[bool] = None
    total_units: Optional[int] = Field(default=None, ge=1)
    mirrors: Optional[list[MirrorAd]] = None
    has_bond: Optional[bool] = None
    bond_balance: Optional[int] = Field(default=None, ge=0)
    sla_p95_ms: Optional[float] = None


class PaymentRequirement(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    price: str = Field(pattern=r"^[0-9]+(\.[0-9]+)?$")
    currency: str = Field(min_length=1)
    network: str = Field(min_length=1)
    recipient: str = Field(min_length=32)
    extension: AssuredExtension


class PaymentReceipt(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    call_id: str = Field(min_length=1)
    tx_ref: Optional[str] = None
    facilitator: Optional[str] = None
    ts: Optional[int] = None


class SettlementHeader(_Wire):
    call_id: str
    response_hash: str
    fulfilled_at: int
    mode: str


def parse_requirement(doc: dict) -> PaymentRequirement:
    """Validate a 402 body. Raises ProtocolError naming the schema violations."""
    if not isinstance(doc, dict):
        raise ProtocolError("Payment requirement must be a JSON object")
    if "extension" not in doc:
        raise ProtocolError("Server response missing assured extension; cannot proceed")
    try:
        return PaymentRequirement.model_validate(doc)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolError(f"Invalid payment requirement: {problems}")


def encode_header(data: dict) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_header(value: str | None) -> dict | None:
    """Decode a base64 JSON header. Returns None if absent or malformed."""
    if not value:
        return None
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
        parsed = json.loads(decoded)
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_receipt(value: str | None) -> PaymentReceipt | None:
    """Parse the X-PAYMENT retry header. None means no proof of payment."""
    if value is None:
        return None
    data = decode_header(value)
    if data is None:
        raise ProtocolError("X-PAYMENT header is not base64-encoded JSON")
    try:
        return PaymentReceipt.model_validate(data)
    except ValidationError:
        raise ProtocolError("X-PAYMENT receipt missing callId")
