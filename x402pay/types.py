"""
Wire and value types for payment authorizations.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as datetime_timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from x402pay.errors import ValidationError

UINT64_MAX = 2 ** 64 - 1

EPOCH = datetime(1970, 1, 1, tzinfo=datetime_timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


def ms_to_datetime(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def truncate_to_ms(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class AuthorizationPayload(WireModel):
    """The statement of payment intent a client signs."""

    amount: int = Field(ge=0, le=UINT64_MAX)
    recipient: str
    resource_id: str = ''
    resource_url: str = ''
    nonce: str
    expiry: int

    def serialize(self) -> bytes:
        """Canonical bytes covered by the client signature."""
        ordered = {
            'amount': str(self.amount),
            'recipient': self.recipient,
            'resourceId': self.resource_id,
            'resourceUrl': self.resource_url,
            'nonce': self.nonce,
            'expiry': self.expiry,
        }
        return json.dumps(ordered, separators=(',', ':')).encode('utf-8')


class PaymentRequest(WireModel):
    payload: AuthorizationPayload
    signature: str
    client_public_key: str
    signed_transaction: Optional[str] = None

    @classmethod
    def deserialize(cls, raw: Union[str, bytes, Dict[str, Any]]) -> 'PaymentRequest':
        try:
            if isinstance(raw, (str, bytes)):
                return cls.model_validate_json(raw)
            return cls.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError('Invalid payment request.') from exc

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class SplitRecipientModel(WireModel):
    address: str
    amount: int = Field(ge=0, le=UINT64_MAX)
    percentage: Decimal = Decimal('0')
    description: str = ''


class SplitPaymentModel(WireModel):
    enabled: bool = False
    total_amount: int = Field(default=0, ge=0, le=UINT64_MAX)
    recipients: Tuple[SplitRecipientModel, ...] = ()


class IssueNonceRequest(WireModel):
    amount: int = Field(gt=0, le=UINT64_MAX)
    recipient: str
    resource_id: str = ''
    resource_url: str = ''
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    split_payment: Optional[SplitPaymentModel] = None


@dataclass(frozen=True)
class SplitRecipient:
    address: str
    amount: int
    percentage: Decimal
    description: str


@dataclass(frozen=True)
class SplitDisabled:
    enabled = False

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return None


@dataclass(frozen=True)
class SplitEnabled:
    total_amount: int
    recipients: Tuple[SplitRecipient, ...]

    enabled = True

    def __post_init__(self):
        if not self.recipients:
            raise ValueError('An enabled split payment needs at least one recipient.')

    def find(self, description: str, address: str = '') -> Optional[SplitRecipient]:
        for recipient in self.recipients:
            if recipient.description != description:
                continue
            if address and recipient.address != address:
                continue
            return recipient
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': True,
            'totalAmount': str(self.total_amount),
            'recipients': [
                {
                    'address': r.address,
                    'amount': str(r.amount),
                    'percentage': str(r.percentage),
                    'description': r.description,
                }
                for r in self.recipients
            ],
        }


SplitPaymentSpec = Union[SplitDisabled, SplitEnabled]

SPLIT_DISABLED = SplitDisabled()


def parse_split_spec(data: Union[None, Dict[str, Any], SplitPaymentModel]) -> SplitPaymentSpec:
    """Build the tagged split variant from its wire or stored form."""
    if data is None:
        return SPLIT_DISABLED
    if not isinstance(data, SplitPaymentModel):
        try:
            data = SplitPaymentModel.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError('Invalid split payment data.') from exc
    if not data.enabled:
        return SPLIT_DISABLED
    try:
        return SplitEnabled(
            total_amount=data.total_amount,
            recipients=tuple(
                SplitRecipient(
                    address=r.address,
                    amount=r.amount,
                    percentage=r.percentage,
                    description=r.description,
                )
                for r in data.recipients
            ),
        )
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
