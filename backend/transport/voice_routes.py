# backend/transport/voice_routes.py
"""
Webhooks the telephony switch calls while a call is live.

Each endpoint answers a call-control document. The switch moves the call
along by following the Gather action / Redirect / Dial action URLs in that
document, so every step rebuilds its context from the query string
(ivr.context.CallContext) and the database, and forwards the context on.

Failures after a call is live never surface as HTTP errors: the handler logs
them and answers something the caller can hear (or an empty document for
terminal callbacks), always with status 200.
"""
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Request
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from twilio.twiml.voice_response import VoiceResponse

from config import public_base_url, phone_payment_url
from data import store
from data.models import PendingMessage
from ivr import twiml
from ivr.context import CallContext
from ivr.keypad import Keypress, decode_digits
from ivr.outcomes import CallStatus, is_terminal, map_provider_status, parse_duration, was_delivered
from transport.telephony import normalize_phone

log = logging.getLogger(__name__)

voice_router = APIRouter(prefix="/ivr/voice", tags=["voice"])

PREFIX = "/ivr/voice"
MENU = f"{PREFIX}/menu"
MENU_SELECTION = f"{PREFIX}/menu-selection"
PLAY_MESSAGE = f"{PREFIX}/play-message"
CONNECT = f"{PREFIX}/connect"
WHISPER = f"{PREFIX}/whisper"
CLICK_TO_CALL_CONNECT = f"{PREFIX}/click-to-call-connect"
CUSTOMER_WHISPER = f"{PREFIX}/customer-whisper"
CALL_STATUS = f"{PREFIX}/call-status"
NOTIFICATION_STATUS = f"{PREFIX}/notification-status"

WEBHOOK_METHODS = ["GET", "POST"]


def xml(response: VoiceResponse) -> Response:
    return Response(content=twiml.render(response), media_type="text/xml")


async def read_payload(request: Request) -> Dict[str, Any]:
    """
    Provider callbacks arrive form-encoded or as JSON; redirects may carry no
    body at all. A GET webhook carries the provider fields in the query string
    next to the call context.
    """
    if request.method == "GET":
        return dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            log.warning("unparseable JSON callback on %s", request.url.path)
            return {}
        return body if isinstance(body, dict) else {}
    if "form" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items()}
    return {}


def context_of(request: Request) -> CallContext:
    return CallContext.from_params(request.query_params)


def url(ctx: CallContext, path: str, **extra) -> str:
    return ctx.url(public_base_url(), path, **extra)


def menu_document(ctx: CallContext, store_name: str) -> VoiceResponse:
    return twiml.main_menu(store_name, ctx.pending_message_id is not None, url(ctx, MENU_SELECTION))


# ------------------------------------------------------------------------------
# Inbound entry: identify the caller, log the call, play the main menu
# ------------------------------------------------------------------------------

@voice_router.api_route("/incoming", methods=WEBHOOK_METHODS)
async def incoming_call(request: Request):
    try:
        payload = await read_payload(request)
        caller = payload.get("From") or payload.get("from") or payload.get("caller") or ""
        call_sid = payload.get("CallSid") or payload.get("call_sid") or ""
        log.info("incoming call from %s (%s)", caller, call_sid)

        customer = store.find_customer_by_phone(caller)
        customer_name = customer.name if customer and customer.name else "Unknown caller"
        customer_id = customer.id if customer else None
        pending = store.find_unplayed_message(caller)

        settings = store.get_store_settings()
        if not settings.store_cell_phone:
            log.error("no store cell phone configured for call forwarding")
            store.save_event("INBOUND_UNAVAILABLE", {"from": caller}, call_sid)
            return xml(twiml.store_unavailable(settings.store_name))

        call_log_id: Optional[int] = None
        try:
            call = store.create_call("inbound", caller, customer_name, customer_id,
                                     status=CallStatus.RINGING.value, call_sid=call_sid)
            call_log_id = call.id
        except SQLAlchemyError:
            # the caller still gets the menu; status updates for this call become no-ops
            log.exception("could not log inbound call from %s", caller)

        store.save_event("INBOUND_RECEIVED", {
            "from": caller, "customer_id": customer_id, "call_log_id": call_log_id,
            "pending_message_id": pending.id if pending else None,
        }, call_sid)

        ctx = CallContext(
            call_log_id=call_log_id,
            pending_message_id=pending.id if pending else None,
            customer_id=customer_id,
            customer_name=customer_name,
            caller_number=caller,
            forward_number=normalize_phone(settings.store_cell_phone),
        )
        return xml(menu_document(ctx, settings.store_name))
    except Exception:
        log.exception("error handling incoming call")
        return xml(twiml.say_and_hangup("Sorry, we are experiencing technical difficulties. Please try again later."))


@voice_router.api_route("/menu", methods=WEBHOOK_METHODS)
async def replay_menu(request: Request):
    ctx = context_of(request)
    try:
        return xml(menu_document(ctx, store.get_store_settings().store_name))
    except Exception:
        log.exception("error replaying menu")
        return xml(twiml.say_and_hangup("Sorry, there was an error. Please try again later."))


# ------------------------------------------------------------------------------
# Main menu selection: 1 message, 2 representative, 3 pay
# ------------------------------------------------------------------------------

@voice_router.api_route("/menu-selection", methods=WEBHOOK_METHODS)
async def menu_selection(request: Request):
    ctx = context_of(request)
    try:
        payload = await read_payload(request)
        key = decode_digits(payload.get("Digits"))
        log.info("menu selection %s for %s", key.value, ctx.customer_name)
        store.save_event("MENU_SELECTION", {"digits": key.value, "call_log_id": ctx.call_log_id},
                         payload.get("CallSid"))

        if key is Keypress.ONE:
            if ctx.pending_message_id is not None:
                return xml(twiml.redirect(url(ctx, PLAY_MESSAGE)))
            return xml(twiml.redirect(url(ctx, MENU), "You have no pending messages.", pause=1))
        if key is Keypress.TWO:
            return xml(twiml.redirect(url(ctx, CONNECT)))
        if key is Keypress.THREE:
            payment = phone_payment_url()
            if payment:
                return xml(twiml.redirect(ctx.url(payment, "")))
            return xml(twiml.redirect(url(ctx, CONNECT), "Phone payments are not available right now."))
        if key is Keypress.INVALID:
            return xml(twiml.redirect(url(ctx, MENU), "Invalid selection. Please try again."))
        # Keypress.NONE
        return xml(twiml.no_selection())
    except Exception:
        log.exception("error in menu selection")
        return xml(twiml.say_and_hangup("Sorry, there was an error. Please try again later."))


# ------------------------------------------------------------------------------
# Pending message playback: CHECK_SKIP -> FETCH -> PLAY -> OFFER_CONTINUE
# Any miss falls through to connecting the caller.
# ------------------------------------------------------------------------------

def fetch_message_or_skip(message_id: Optional[int]) -> Optional[PendingMessage]:
    """
    Fail-open lookup: None means "skip playback and connect the caller",
    whether the message is gone or the store could not be read.
    """
    if message_id is None:
        log.warning("playback requested without pending_message_id")
        return None
    try:
        message = store.get_pending_message(message_id)
    except SQLAlchemyError:
        log.exception("could not load pending message %s", message_id)
        return None
    if message is None:
        log.warning("pending message %s not found", message_id)
    return message


@voice_router.api_route("/play-message", methods=WEBHOOK_METHODS)
async def play_pending_message(request: Request):
    ctx = context_of(request)
    connect_url = url(ctx, CONNECT)
    try:
        payload = await read_payload(request)
        if decode_digits(payload.get("Digits")) is Keypress.TWO:
            return xml(twiml.redirect(connect_url))

        message = fetch_message_or_skip(ctx.pending_message_id)
        if message is None:
            return xml(twiml.redirect(connect_url))

        # marked before answering: the switch may still be speaking when this request is long gone
        store.mark_message_played(message.id)
        store.save_event("MESSAGE_PLAYED", {"pending_message_id": message.id, "call_log_id": ctx.call_log_id},
                         payload.get("CallSid"))
        return xml(twiml.play_message(message.message, connect_url))
    except Exception:
        log.exception("error playing pending message")
        return xml(twiml.redirect(connect_url, "Sorry, there was an error. Please hold while we connect you."))


# ------------------------------------------------------------------------------
# Connect: forward the caller to the store phone through the whisper step
# ------------------------------------------------------------------------------

@voice_router.api_route("/connect", methods=WEBHOOK_METHODS)
async def connect_to_store(request: Request):
    ctx = context_of(request)
    try:
        if not ctx.forward_number:
            log.error("connect requested without a forward number (call_log_id=%s)", ctx.call_log_id)
            return xml(twiml.say_and_hangup("We're sorry, we are currently unavailable. Please try again later. Goodbye."))

        customer_name = ctx.customer_name or "Customer"
        whisper_url = url(CallContext(call_log_id=ctx.call_log_id, customer_name=customer_name), WHISPER)
        status_url = url(CallContext(call_log_id=ctx.call_log_id), CALL_STATUS)
        log.info("forwarding %s to %s", ctx.caller_number, ctx.forward_number)
        return xml(twiml.forward_to_store(ctx.forward_number, ctx.caller_number, whisper_url, status_url))
    except Exception:
        log.exception("error connecting caller")
        return xml(twiml.say_and_hangup("Sorry, there was an error. Please try again later."))


# ------------------------------------------------------------------------------
# Whisper on the store leg: announce the caller, require 1 so voicemail can't accept
# ------------------------------------------------------------------------------

@voice_router.api_route("/whisper", methods=WEBHOOK_METHODS)
async def call_whisper(request: Request):
    ctx = context_of(request)
    try:
        payload = await read_payload(request)
        customer_name = ctx.customer_name or "Unknown caller"
        confirming = request.query_params.get("step") == "confirm" or "Digits" in payload

        if not confirming:
            action = url(ctx, WHISPER, step="confirm")
            return xml(twiml.whisper_prompt(f"Incoming call from {customer_name}. Press 1 to accept the call.", action))

        if decode_digits(payload.get("Digits")) is Keypress.ONE:
            store.save_event("WHISPER_CONFIRMED", {"call_log_id": ctx.call_log_id}, payload.get("CallSid"))
            return xml(twiml.whisper_accepted())

        store.save_event("WHISPER_DECLINED", {"call_log_id": ctx.call_log_id, "digits": payload.get("Digits", "")},
                         payload.get("CallSid"))
        return xml(twiml.say_and_hangup("No response received. Goodbye."))
    except Exception:
        log.exception("error in whisper handler")
        return xml(twiml.say_and_hangup("Error processing call."))


# ------------------------------------------------------------------------------
# Click-to-call, second step: the store owner confirmed (or not) on their phone
# ------------------------------------------------------------------------------

@voice_router.api_route("/click-to-call-connect", methods=WEBHOOK_METHODS)
async def click_to_call_connect(request: Request):
    ctx = context_of(request)
    try:
        payload = await read_payload(request)
        key = decode_digits(payload.get("Digits"))
        customer_name = ctx.customer_name or "the customer"
        log.info("click-to-call connect: %s digits=%s call_log_id=%s", ctx.customer_phone, key.value, ctx.call_log_id)

        if key is not Keypress.ONE:
            store.mark_call_failed(ctx.call_log_id, "User did not press 1 to connect")
            return xml(twiml.say_and_hangup("Call cancelled. Goodbye."))

        if not ctx.customer_phone:
            store.mark_call_failed(ctx.call_log_id, "No customer phone number to connect")
            return xml(twiml.say_and_hangup("No customer phone number was provided. Goodbye."))

        store.update_call_status(ctx.call_log_id, CallStatus.IN_PROGRESS.value)
        status_url = url(CallContext(call_log_id=ctx.call_log_id), CALL_STATUS)
        return xml(twiml.dial_customer(customer_name, ctx.customer_phone, status_url,
                                       whisper_url=balance_whisper_url(ctx, customer_name)))
    except Exception:
        log.exception("error in click-to-call connect")
        return xml(twiml.say_and_hangup("Sorry, there was an error connecting your call."))


def balance_whisper_url(ctx: CallContext, customer_name: str) -> Optional[str]:
    """Whisper URL for the customer leg when the customer owes a balance, else None (plain bridge)."""
    try:
        customer = store.get_customer(ctx.customer_id)
    except SQLAlchemyError:
        log.exception("could not load customer %s for balance whisper", ctx.customer_id)
        return None
    if customer is None or (customer.outstanding_balance or 0) <= 0:
        return None
    whisper_ctx = CallContext(call_log_id=ctx.call_log_id, customer_id=customer.id,
                              customer_name=customer_name, caller_number=ctx.customer_phone)
    return url(whisper_ctx, CUSTOMER_WHISPER)


# ------------------------------------------------------------------------------
# Balance whisper on the customer leg of a click-to-call
#
# - Announces the outstanding balance and offers 3 to pay by phone.
# - Any other key, silence, or an error leaves the customer connected.
# ------------------------------------------------------------------------------

@voice_router.api_route("/customer-whisper", methods=WEBHOOK_METHODS)
async def customer_whisper(request: Request):
    ctx = context_of(request)
    try:
        payload = await read_payload(request)
        confirming = request.query_params.get("step") == "confirm" or "Digits" in payload

        if not confirming:
            customer = store.get_customer(ctx.customer_id)
            balance = customer.outstanding_balance if customer else 0
            if not balance or balance <= 0:
                return xml(twiml.whisper_accepted())
            store_name = store.get_store_settings().store_name
            return xml(twiml.balance_offer(store_name, balance, url(ctx, CUSTOMER_WHISPER, step="confirm")))

        key = decode_digits(payload.get("Digits"))
        store.save_event("CUSTOMER_WHISPER", {"call_log_id": ctx.call_log_id, "digits": key.value},
                         payload.get("CallSid"))
        if key is Keypress.THREE:
            payment = phone_payment_url()
            if payment:
                settings = store.get_store_settings()
                pay_ctx = ctx.evolve(forward_number=normalize_phone(settings.store_cell_phone))
                return xml(twiml.redirect(pay_ctx.url(payment, "")))
            return xml(twiml.announce("Phone payments are not available right now. Connecting you now."))
        return xml(twiml.whisper_accepted())
    except Exception:
        log.exception("error in customer whisper")
        return xml(twiml.whisper_accepted())


# ------------------------------------------------------------------------------
# Terminal callbacks
# ------------------------------------------------------------------------------

@voice_router.api_route("/call-status", methods=WEBHOOK_METHODS)
async def call_status(request: Request):
    """
    Dial action and StatusCallback target. A Dial action (DialCallStatus
    present) reports the bridged leg and always applies; a plain
    StatusCallback only fills in a row nothing terminal was written to yet.
    """
    ctx = context_of(request)
    dial_action = False
    status = CallStatus.MISSED.value
    try:
        payload = await read_payload(request)
        dial_action = payload.get("DialCallStatus") is not None
        status = map_provider_status(payload.get("DialCallStatus") or payload.get("CallStatus"))
        duration = parse_duration(payload.get("DialCallDuration") or payload.get("CallDuration"))
        answered_by = payload.get("AnsweredBy") or ""
        log.info("call status: call_log_id=%s status=%s duration=%ss", ctx.call_log_id, status, duration)

        if ctx.call_log_id is None:
            log.warning("status callback without call_log_id; nothing to update")
        else:
            current = store.get_call(ctx.call_log_id)
            if current is not None and not dial_action and is_terminal(current.status):
                log.info("call log %s already %s; keeping it", ctx.call_log_id, current.status)
            else:
                store.update_call_status(ctx.call_log_id, status, duration_seconds=duration, answered_by=answered_by)
        store.save_event("STATUS_CALLBACK", {"call_log_id": ctx.call_log_id, "status": status, "duration": duration},
                         payload.get("CallSid"))
    except Exception:
        log.exception("error in status callback")

    if dial_action and status != CallStatus.COMPLETED.value:
        return xml(twiml.not_answered())
    return xml(twiml.empty())


@voice_router.api_route("/notification-status", methods=WEBHOOK_METHODS)
async def notification_status(request: Request):
    """Delete the pending message once a reminder call was actually heard; otherwise keep it for playback."""
    ctx = context_of(request)
    if ctx.pending_message_id is None:
        log.info("notification status without pending_message_id; nothing to update")
        return xml(twiml.empty())
    try:
        payload = await read_payload(request)
        call_status = payload.get("CallStatus") or ""
        duration = parse_duration(payload.get("CallDuration"))

        if was_delivered(call_status, duration):
            store.delete_pending_message(ctx.pending_message_id)
            event = "NOTIFICATION_DELIVERED"
            log.info("notification heard; pending message %s deleted", ctx.pending_message_id)
        else:
            event = "NOTIFICATION_RETAINED"
            log.info("notification not heard (%s, %ss); keeping pending message %s",
                     call_status, duration, ctx.pending_message_id)
        store.save_event(event, {"pending_message_id": ctx.pending_message_id, "status": call_status,
                                 "duration": duration}, payload.get("CallSid"))
    except Exception:
        log.exception("error in notification status callback")
    return xml(twiml.empty())
