# backend/transport/api_routes.py
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from config import ConfigurationError, public_base_url
from data import store
from ivr import twiml
from ivr.context import CallContext
from ivr.outcomes import CallStatus
from transport.telephony import CallPlacementError, TelephonyClient, get_telephony_client, normalize_phone
from transport.voice_routes import CALL_STATUS, CLICK_TO_CALL_CONNECT, NOTIFICATION_STATUS

log = logging.getLogger(__name__)

api_router = APIRouter(prefix="/ivr/api", tags=["calls"])


class InvalidRequest(ValueError):
    pass


def _as_int(raw: Any) -> Optional[int]:
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


def rejected(error: Exception) -> JSONResponse:
    return JSONResponse({"error": str(error)}, status_code=400)


def resolve_display_name(explicit: Any, customer_id: Optional[int]) -> str:
    """Explicit name, else the customer's stored name, else a placeholder."""
    name = str(explicit).strip() if explicit is not None else ""
    if name:
        return name
    customer = store.get_customer(customer_id)
    if customer and customer.name:
        return customer.name
    return "the customer"


# ------------------------------------------------------------------------------
# Click-to-call
#
# - Rings the store cell phone first with "Press 1 to call <customer>".
# - Pressing 1 runs /ivr/voice/click-to-call-connect, which dials the customer.
# - Exactly one call_logs row per attempt; none when the request is rejected
#   before a call could be placed.
# ------------------------------------------------------------------------------

def start_click_to_call(payload: Dict[str, Any], telephony: TelephonyClient) -> Dict[str, Any]:
    phone_number = str(payload.get("phone_number") or "").strip()
    if not phone_number:
        raise InvalidRequest("Phone number is required")

    telephony.ensure_configured()
    settings = store.get_store_settings()
    if not settings.store_cell_phone:
        raise ConfigurationError("Store cell phone not configured. Please set it in Settings.")

    store_phone = normalize_phone(settings.store_cell_phone)
    customer_phone = normalize_phone(phone_number)
    customer_id = _as_int(payload.get("customer_id"))
    display_name = resolve_display_name(payload.get("customer_name"), customer_id)

    call = store.create_call("outbound", phone_number, display_name, customer_id)
    log.info("click-to-call: store %s -> customer %s (call_log_id=%s)", store_phone, customer_phone, call.id)

    ctx = CallContext(call_log_id=call.id, customer_id=customer_id, customer_name=display_name,
                      customer_phone=customer_phone)
    base = public_base_url()
    script = twiml.whisper_prompt(f"Press 1 to call {display_name}.", ctx.url(base, CLICK_TO_CALL_CONNECT),
                                  action_on_empty_result=True)
    status_url = CallContext(call_log_id=call.id).url(base, CALL_STATUS)

    try:
        call_sid = telephony.place_call(store_phone, twiml.render(script), status_callback=status_url)
    except CallPlacementError as e:
        store.update_call_status(call.id, CallStatus.FAILED.value, notes=str(e))
        store.save_event("CLICK_TO_CALL_FAILED", {"call_log_id": call.id, "error": str(e)})
        raise

    store.attach_provider_id(call.id, call_sid)
    store.save_event("CLICK_TO_CALL_PLACED", {"call_log_id": call.id, "to": customer_phone}, call_sid)
    return {"success": True, "callSid": call_sid, "callLogId": call.id}


@api_router.post("/click-to-call")
async def click_to_call(payload: dict, telephony: TelephonyClient = Depends(get_telephony_client)):
    """
    Body: { "phone_number": "...", "customer_id"?: 1, "customer_name"?: "..." }
    Returns: { "success": true, "callSid": "...", "callLogId": 1 } or { "error": "..." } (400)
    """
    try:
        return start_click_to_call(payload, telephony)
    except (InvalidRequest, ConfigurationError, CallPlacementError) as e:
        log.warning("click-to-call rejected: %s", e)
        return rejected(e)


# ------------------------------------------------------------------------------
# Reminder / order-ready notification call
#
# - Queues the message as a pending message first, then calls the customer.
# - /ivr/voice/notification-status deletes it once the call was heard; until
#   then the customer hears it from the menu when they call in.
# ------------------------------------------------------------------------------

def send_notification_call(payload: Dict[str, Any], telephony: TelephonyClient) -> Dict[str, Any]:
    customer_id = _as_int(payload.get("customer_id"))
    if customer_id is None:
        raise InvalidRequest("Customer ID is required")
    message = str(payload.get("message") or "").strip()
    if not message:
        raise InvalidRequest("Message is required")

    customer = store.get_customer(customer_id)
    phone = normalize_phone(payload.get("phone") or (customer.phone if customer else ""))
    if not phone:
        raise InvalidRequest("Valid phone number is required")

    telephony.ensure_configured()
    pending = store.create_pending_message(customer_id, message, phone_number=phone,
                                           notification_type=str(payload.get("notification_type") or "custom"))
    status_url = CallContext(pending_message_id=pending.id).url(public_base_url(), NOTIFICATION_STATUS)
    log.info("notification call to %s (pending_message_id=%s)", phone, pending.id)

    # on failure the pending message stays queued for the customer's next call-in
    call_sid = telephony.place_call(phone, twiml.render(twiml.notification(message)), status_callback=status_url)
    store.set_pending_message_call_sid(pending.id, call_sid)
    store.save_event("NOTIFICATION_PLACED", {"pending_message_id": pending.id, "to": phone}, call_sid)
    return {"success": True, "callSid": call_sid, "pendingMessageId": pending.id}


@api_router.post("/notify")
async def notify_customer(payload: dict, telephony: TelephonyClient = Depends(get_telephony_client)):
    """
    Body: { "customer_id": 1, "message": "...", "notification_type"?: "order_ready", "phone"?: "..." }
    """
    try:
        return send_notification_call(payload, telephony)
    except (InvalidRequest, ConfigurationError, CallPlacementError) as e:
        log.warning("notification rejected: %s", e)
        return rejected(e)
