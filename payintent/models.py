"""
Data models for the payintent verifier.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .exceptions import ErrorCode


class PaymentStatus(str, Enum):
    """Lifecycle states of a payment intent"""
    PENDING = "PENDING"
    DETECTED = "DETECTED"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class AssetType(str, Enum):
    NATIVE = "native"
    ERC20 = "erc20"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PaymentAsset(_CamelModel):
    """Asset an intent is denominated in"""
    symbol: str
    decimals: int
    type: AssetType
    contract_address: Optional[str] = Field(None, alias="contractAddress")


class ConfirmationPolicy(_CamelModel):
    min_confirmations: int = Field(..., alias="minConfirmations")


class PaymentIntent(_CamelModel):
    """
    A request to be paid `amount` base units of `asset` at `recipient`
    before `expires_at`.

    `amount` is kept as a Python int and written to the wire as a decimal
    string so JSON consumers never round it.
    """
    id: str
    created_at: datetime = Field(..., alias="createdAt")
    expires_at: datetime = Field(..., alias="expiresAt")
    chain_id: str = Field(..., alias="chainId")
    asset: PaymentAsset
    recipient: str
    amount: int
    reference: str
    confirmation_policy: ConfirmationPolicy = Field(..., alias="confirmationPolicy")
    status: PaymentStatus = PaymentStatus.PENDING

    @field_serializer("amount")
    def _serialize_amount(self, amount: int) -> str:
        return str(amount)


class CreateIntentInput(_CamelModel):
    """
    Caller-supplied fields for a new intent.

    Only shapes are enforced here; semantic checks live in
    `payintent.validation.validate_create_intent_input`.
    """
    chain_id: Optional[str] = Field(None, alias="chainId")
    asset: PaymentAsset
    recipient: str
    amount: str
    reference: str
    expires_at: Union[datetime, str] = Field(..., alias="expiresAt")
    confirmation_policy: Optional[ConfirmationPolicy] = Field(None, alias="confirmationPolicy")


class PaymentRequest(_CamelModel):
    """Payment link, QR payload and instructions derived from an intent"""
    payment_link: str = Field(..., alias="paymentLink")
    qr_payload: str = Field(..., alias="qrPayload")
    instructions: List[str]
    expires_at: datetime = Field(..., alias="expiresAt")


class VerificationResult(_CamelModel):
    """Outcome of a single verification attempt. Never persisted as-is."""
    status: PaymentStatus
    tx_hash: Optional[str] = Field(None, alias="txHash")
    confirmations: Optional[int] = None
    reason: Optional[str] = None
    error_code: Optional[ErrorCode] = Field(None, alias="errorCode")


class VerificationMeta(_CamelModel):
    """Verification metadata merged into a stored intent"""
    tx_hash: Optional[str] = Field(None, alias="txHash")
    confirmations: Optional[int] = None
    last_checked_at: Optional[datetime] = Field(None, alias="lastCheckedAt")


class StoredIntent(_CamelModel):
    id: str
    intent: PaymentIntent
    status: PaymentStatus
    tx_hash: Optional[str] = Field(None, alias="txHash")
    confirmations: Optional[int] = None
    last_checked_at: Optional[datetime] = Field(None, alias="lastCheckedAt")


class IntentEvent(_CamelModel):
    """Append-only audit record"""
    id: int
    intent_id: str = Field(..., alias="intentId")
    type: str
    payload: Dict[str, Any]
    created_at: datetime = Field(..., alias="createdAt")


class CreateIntentResult(_CamelModel):
    intent: PaymentIntent
    payment_request: PaymentRequest = Field(..., alias="paymentRequest")


class IntentView(_CamelModel):
    """What the boundary returns for a stored intent"""
    intent: PaymentIntent
    status: PaymentStatus
    tx_hash: Optional[str] = Field(None, alias="txHash")
    confirmations: Optional[int] = None
    last_checked_at: Optional[datetime] = Field(None, alias="lastCheckedAt")


class HealthStatus(_CamelModel):
    ok: bool
    chain_id: str = Field(..., alias="chainId")
    rpc_connected: bool = Field(..., alias="rpcConnected")
    db_status: bool = Field(..., alias="dbStatus")
