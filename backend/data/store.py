import os, json, re, logging
from typing import Dict, Any, Optional
from sqlmodel import SQLModel, create_engine, Session, select
from ivr.outcomes import CallStatus, is_terminal
from .models import Customer, StoreSettings, CallLog, PendingMessage, CallEvent, utcnow

log = logging.getLogger(__name__)

DB_URL = os.environ.get("DB_URL", "sqlite:///bookstore_ivr.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})


def init_db(db_url: Optional[str] = None):
    """Create tables; a db_url rebinds the module engine (tests, alternate deployments)."""
    global engine
    if db_url:
        engine.dispose()
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        engine = create_engine(db_url, connect_args=connect_args)
    SQLModel.metadata.create_all(engine)


def save_event(event_type: str, payload: Dict[str, Any], call_sid: Optional[str] = None):
    with Session(engine) as s:
        s.add(CallEvent(call_sid=call_sid or "", event_type=event_type, payload=json.dumps(payload, default=str)))
        s.commit()


def last_ten_digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")[-10:]


# --- settings / customers ----------------------------------------------------

def get_store_settings() -> StoreSettings:
    with Session(engine) as s:
        row = s.exec(select(StoreSettings)).first()
        return row or StoreSettings()


def save_store_settings(store_name: Optional[str] = None, store_cell_phone: Optional[str] = None) -> StoreSettings:
    with Session(engine) as s:
        row = s.exec(select(StoreSettings)).first()
        if not row:
            row = StoreSettings()
        if store_name is not None:
            row.store_name = store_name
        if store_cell_phone is not None:
            row.store_cell_phone = store_cell_phone
        s.add(row)
        s.commit()
        s.refresh(row)
        return row


def create_customer(name: str, phone: str = "", outstanding_balance: float = 0.0) -> Customer:
    with Session(engine) as s:
        customer = Customer(name=name, phone=phone, phone_digits=last_ten_digits(phone),
                            outstanding_balance=outstanding_balance)
        s.add(customer)
        s.commit()
        s.refresh(customer)
        return customer


def get_customer(customer_id: Optional[int]) -> Optional[Customer]:
    if customer_id is None:
        return None
    with Session(engine) as s:
        return s.get(Customer, customer_id)


def find_customer_by_phone(phone: str) -> Optional[Customer]:
    digits = last_ten_digits(phone)
    if not digits:
        return None
    with Session(engine) as s:
        # stored numbers are free-form ("(555) 123-4567", "+15551234567"); phone_digits is the comparable form
        return s.exec(select(Customer).where(Customer.phone_digits == digits).order_by(Customer.id)).first()


# --- call logs ---------------------------------------------------------------

def create_call(direction: str, phone_number: str, customer_name: str,
                customer_id: Optional[int] = None, status: str = CallStatus.INITIATED.value,
                call_sid: str = "") -> CallLog:
    with Session(engine) as s:
        call = CallLog(direction=direction, phone_number=phone_number, customer_name=customer_name,
                       customer_id=customer_id, status=status, call_sid=call_sid)
        s.add(call)
        s.commit()
        s.refresh(call)
        return call


def get_call(call_log_id: Optional[int]) -> Optional[CallLog]:
    if call_log_id is None:
        return None
    with Session(engine) as s:
        return s.get(CallLog, call_log_id)


def attach_provider_id(call_log_id: int, call_sid: str) -> Optional[CallLog]:
    """Record the provider's call id once call creation is confirmed; the call is now ringing."""
    return update_call_status(call_log_id, CallStatus.RINGING.value, call_sid=call_sid)


def update_call_status(call_log_id: Optional[int], status: str, duration_seconds: Optional[int] = None,
                       answered_by: Optional[str] = None, notes: Optional[str] = None,
                       call_sid: Optional[str] = None) -> Optional[CallLog]:
    """
    Absolute-value update of a call log row. Never raises for a missing row:
    the caller is mid-call and must still answer the provider.
    A terminal status is never replaced by a non-terminal one.
    """
    if call_log_id is None:
        log.warning("call log update skipped: no call_log_id (status=%s)", status)
        return None
    with Session(engine) as s:
        call = s.get(CallLog, call_log_id)
        if not call:
            log.warning("call log %s not found (status=%s)", call_log_id, status)
            return None
        if is_terminal(call.status) and not is_terminal(status):
            log.info("call log %s already %s, ignoring %s", call_log_id, call.status, status)
        else:
            call.status = status
        if duration_seconds is not None:
            call.duration_seconds = duration_seconds
        if answered_by is not None:
            call.answered_by = answered_by or None
        if notes is not None:
            call.notes = notes
        if call_sid:
            call.call_sid = call_sid
        call.updated_at = utcnow()
        s.add(call)
        s.commit()
        s.refresh(call)
        return call


def mark_call_failed(call_log_id: Optional[int], reason: str) -> Optional[CallLog]:
    return update_call_status(call_log_id, CallStatus.FAILED.value, notes=reason)


# --- pending messages --------------------------------------------------------

def create_pending_message(customer_id: Optional[int], message: str, phone_number: str = "",
                           notification_type: str = "") -> PendingMessage:
    with Session(engine) as s:
        pm = PendingMessage(customer_id=customer_id, message=message, phone_number=phone_number,
                            phone_digits=last_ten_digits(phone_number),
                            notification_type=notification_type)
        s.add(pm)
        s.commit()
        s.refresh(pm)
        return pm


def get_pending_message(message_id: Optional[int]) -> Optional[PendingMessage]:
    if message_id is None:
        return None
    with Session(engine) as s:
        return s.get(PendingMessage, message_id)


def find_unplayed_message(phone: str) -> Optional[PendingMessage]:
    """Newest unplayed message addressed to this caller, matched on the last ten digits."""
    digits = last_ten_digits(phone)
    if not digits:
        return None
    with Session(engine) as s:
        return s.exec(
            select(PendingMessage)
            .where(PendingMessage.phone_digits == digits, PendingMessage.is_played == False)  # noqa: E712
            .order_by(PendingMessage.created_at.desc(), PendingMessage.id.desc())
        ).first()


def set_pending_message_call_sid(message_id: int, call_sid: str):
    with Session(engine) as s:
        pm = s.get(PendingMessage, message_id)
        if pm:
            pm.call_sid = call_sid
            s.add(pm)
            s.commit()


def mark_message_played(message_id: int) -> bool:
    with Session(engine) as s:
        pm = s.get(PendingMessage, message_id)
        if not pm:
            return False
        if not pm.is_played:
            pm.is_played = True
            pm.played_at = utcnow()
            s.add(pm)
            s.commit()
        return True


def delete_pending_message(message_id: int) -> bool:
    """Idempotent: deleting a message that is already gone is not an error."""
    with Session(engine) as s:
        pm = s.get(PendingMessage, message_id)
        if not pm:
            return False
        s.delete(pm)
        s.commit()
        return True
