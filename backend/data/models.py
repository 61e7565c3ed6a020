from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = ""
    phone: str = ""
    phone_digits: str = Field(default="", index=True)  # last ten digits of phone, for caller lookup
    outstanding_balance: float = 0.0


class StoreSettings(SQLModel, table=True):
    __tablename__ = "store_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    store_name: str = "the bookstore"
    store_cell_phone: str = ""   # forwarding number for inbound calls / click-to-call


class CallLog(SQLModel, table=True):
    __tablename__ = "call_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: Optional[int] = Field(default=None, index=True)
    phone_number: str = ""
    customer_name: str = ""
    direction: str = "inbound"   # inbound | outbound
    status: str = "initiated"    # see ivr.outcomes.CallStatus
    call_sid: str = ""           # set once the provider confirms the call
    duration_seconds: int = 0
    answered_by: Optional[str] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PendingMessage(SQLModel, table=True):
    __tablename__ = "pending_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: Optional[int] = Field(default=None, index=True)
    phone_number: str = ""
    phone_digits: str = Field(default="", index=True)
    message: str
    notification_type: str = ""  # order_ready | order_received | payment_reminder | custom
    call_sid: str = ""
    is_played: bool = False
    played_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class CallEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    call_sid: str = ""
    event_type: str              # INBOUND_RECEIVED | MENU_SELECTION | STATUS_CALLBACK | ...
    payload: str = "{}"
    ts: datetime = Field(default_factory=utcnow)
