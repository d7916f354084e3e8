from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class TokenData(BaseModel):
    """Claims read from an identity token."""

    sub: str | None = None
    exp: Optional[datetime] = None


class ErrorOut(BaseModel):
    """Structured error body."""

    detail: str
    kind: str


class ProfileSync(BaseModel):
    """Profile fields the client keeps in sync. ``None`` leaves a field as is."""

    username: Optional[str] = Field(default=None, max_length=50)
    display_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    mobile: Optional[str] = Field(default=None, max_length=32)
    push_token: Optional[str] = Field(default=None, max_length=512)


class PushTokenUpdate(BaseModel):
    """Payload for registering the caller's device push token."""

    push_token: str = Field(min_length=1, max_length=512)


class UserOut(BaseModel):
    """Response schema for the caller's own user record."""

    id: int
    uid: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    mobile_normalized: Optional[str] = None
    needs_phone_update: bool = False
    has_push_token: bool = False

    class Config:
        from_attributes = True

    @classmethod
    def from_user(cls, user) -> "UserOut":
        out = cls.model_validate(user)
        out.has_push_token = bool(user.push_token)
        return out


class PhoneStatusOut(BaseModel):
    """Ownership summary for one phone, as seen by the caller."""

    phone_normalized: str
    registered: bool
    owned_by_caller: bool
    previously_owned_by_other: bool


class PhoneClaimCreate(BaseModel):
    """Request to take over the phone currently owned by another account."""

    phone: str = Field(min_length=1, max_length=32)


class PhoneClaimRespond(BaseModel):
    """Target owner's answer to a claim."""

    action: Literal["approve", "reject", "block"]
    pin_approved: bool = False
    biometric_approved: bool = False


class PhoneClaimOut(BaseModel):
    """Response schema for a phone claim."""

    id: int
    phone_normalized: str
    requester_id: str
    target_owner_id: str
    status: str
    reject_count: int
    blocked_by_target: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PhoneClaimRequestResult(BaseModel):
    """Outcome of requesting a claim."""

    claim: PhoneClaimOut
    can_block: bool


class PhoneClaimResolution(BaseModel):
    """Outcome of responding to a claim."""

    claim: PhoneClaimOut
    can_block: bool = False
    former_owner_needs_phone: bool = False


class MessageSend(BaseModel):
    """Payload for relaying a chat message."""

    conversation_id: str = Field(max_length=300)
    receiver_id: str = Field(max_length=128)
    message_text: str = Field(max_length=4000)
    message_id: Optional[str] = Field(default=None, max_length=128)
    message_type: str = Field(default="text", max_length=20)
    timestamp: Optional[int] = Field(default=None, ge=0)

    @field_validator("conversation_id", "receiver_id", "message_text")
    @classmethod
    def strip_required(cls, v: str, info) -> str:
        """Trim whitespace and reject values that end up empty."""
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} is required")
        return v

    @field_validator("message_id")
    @classmethod
    def strip_optional(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank message id as absent."""
        if v is None:
            return None
        return v.strip() or None


class MessageSendResult(BaseModel):
    """Outcome of a send as seen by the sender."""

    message_id: str
    status: str
    queued: bool = False
    note: Optional[str] = None


class DeliveryReceipt(BaseModel):
    """Receiver-submitted delivery receipt."""

    message_id: str = Field(min_length=1, max_length=128)
    status: Literal["delivered", "read"]


class DeliveryReceiptResult(BaseModel):
    """Status recorded after applying a receipt."""

    message_id: str
    status: str


class MessageDeliveryOut(BaseModel):
    """Delivery record returned by pending sync."""

    message_id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    message_text: str
    message_timestamp: int
    status: str
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingSyncOut(BaseModel):
    """One page of pending messages and the cursor for the next call."""

    items: List[MessageDeliveryOut]
    cursor: int


class LedgerEventSync(BaseModel):
    """Shared ledger entry to relay to the contact it was recorded with."""

    peer_user_id: str = Field(max_length=128)
    origin_txn_id: str = Field(max_length=128)
    op: Optional[str] = Field(default=None, max_length=20)
    entry_type: Optional[str] = Field(default=None, max_length=20)
    amount: Optional[float] = None
    note: Optional[str] = Field(default=None, max_length=500)
    timestamp: Optional[int] = Field(default=None, ge=0)
    idempotency_key: Optional[str] = Field(default=None, max_length=256)
    version: Optional[int] = Field(default=None, ge=1)
    contact_record_id: Optional[str] = Field(default=None, max_length=128)


class LedgerEventSyncResult(BaseModel):
    """Outcome of relaying a ledger entry."""

    delivered: bool = False
    queued: bool = False
    idempotency_key: str
    note: Optional[str] = None
