# backend/ivr/twiml.py
"""
Call-control documents returned to the switch.

Built with twilio's VoiceResponse. `render` serializes its element tree with
every XML special character (& < > " ') escaped in text and attribute values,
including the `&` separators of continuation URLs, so callers hand in plain
text and plain URLs and nothing is escaped twice.
"""
from typing import Optional
from xml.sax.saxutils import escape
from twilio.twiml.voice_response import VoiceResponse

VOICE = "man"
LANGUAGE = "en-US"

WHISPER_TIMEOUT = 10
MENU_TIMEOUT = 10
CONTINUE_TIMEOUT = 5
FORWARD_DIAL_TIMEOUT = 30
CUSTOMER_DIAL_TIMEOUT = 45


def _say(node, text: str):
    node.say(text, voice=VOICE, language=LANGUAGE)


_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def _text(value: Optional[str]) -> str:
    return escape(value, _ENTITIES) if value else ""


def _serialize(el) -> str:
    attrs = "".join(f' {name}="{_text(value)}"' for name, value in el.attrib.items())
    inner = _text(el.text) + "".join(_serialize(child) for child in el)
    node = f"<{el.tag}{attrs}>{inner}</{el.tag}>" if inner else f"<{el.tag}{attrs}/>"
    return node + _text(el.tail)


def render(response: VoiceResponse) -> str:
    # twilio's own to_xml() leaves quotes and apostrophes raw in text nodes
    return '<?xml version="1.0" encoding="UTF-8"?>' + _serialize(response.xml())


def empty() -> VoiceResponse:
    return VoiceResponse()


def say_and_hangup(text: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, text)
    r.hangup()
    return r


def redirect(url: str, text: Optional[str] = None, pause: int = 0) -> VoiceResponse:
    r = VoiceResponse()
    if text:
        _say(r, text)
    if pause:
        r.pause(length=pause)
    r.redirect(url, method="POST")
    return r


# --- inbound menu ------------------------------------------------------------

def store_unavailable(store_name: str) -> VoiceResponse:
    return say_and_hangup(f"Thank you for calling {store_name}. We are currently unavailable. Please try again later.")


def main_menu(store_name: str, has_message: bool, action_url: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, f"Welcome to {store_name}.")
    r.pause(length=1)
    gather = r.gather(num_digits=1, action=action_url, method="POST", timeout=MENU_TIMEOUT)
    _say(gather, "Press 1 to listen to your message." if has_message else "Press 1 for any previous messages.")
    _say(gather, "Press 2 to speak with a representative.")
    _say(gather, "Press 3 to pay for your books.")
    _say(r, "We didn't receive your selection. Goodbye.")
    r.hangup()
    return r


def no_selection() -> VoiceResponse:
    return say_and_hangup("We didn't receive your selection. Goodbye.")


# --- pending message playback ------------------------------------------------

def play_message(message: str, after_url: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, "Here is your message:")
    r.pause(length=1)
    _say(r, message)
    r.pause(length=2)
    gather = r.gather(num_digits=1, action=after_url, method="POST", timeout=CONTINUE_TIMEOUT)
    _say(gather, "Press any key to speak with a representative, or hang up if you're done.")
    # silence after the prompt still hands the caller over
    r.redirect(after_url, method="POST")
    return r


# --- forwarding to the store -------------------------------------------------

def forward_to_store(forward_number: str, caller_number: str, whisper_url: str, status_url: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, "Please hold while we connect you.")
    dial = r.dial(caller_id=caller_number or None, timeout=FORWARD_DIAL_TIMEOUT, action=status_url, method="POST")
    dial.number(forward_number, url=whisper_url, method="POST")
    _say(r, "The call was not answered. Goodbye.")
    return r


def whisper_prompt(prompt: str, action_url: str, fallback: str = "No response received. Goodbye.",
                   action_on_empty_result: bool = False) -> VoiceResponse:
    """Ask for a single 1; `action_on_empty_result` sends a timeout to the action URL instead of the fallback."""
    r = VoiceResponse()
    gather = r.gather(num_digits=1, action=action_url, method="POST", timeout=WHISPER_TIMEOUT,
                      action_on_empty_result=action_on_empty_result or None)
    _say(gather, prompt)
    _say(r, fallback)
    r.hangup()
    return r


def announce(text: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, text)
    return r


def whisper_accepted() -> VoiceResponse:
    return announce("Connecting you now.")


def not_answered() -> VoiceResponse:
    return say_and_hangup("The call was not answered. Goodbye.")


# --- outbound ----------------------------------------------------------------

def dial_customer(customer_name: str, customer_phone: str, status_url: str,
                  whisper_url: Optional[str] = None) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, f"Connecting you to {customer_name} now.")
    dial = r.dial(timeout=CUSTOMER_DIAL_TIMEOUT, action=status_url, method="POST")
    if whisper_url:
        dial.number(customer_phone, url=whisper_url, method="POST")
    else:
        dial.number(customer_phone)
    _say(r, "The call has ended. Goodbye.")
    return r


def notification(message: str) -> VoiceResponse:
    r = VoiceResponse()
    _say(r, message)
    r.pause(length=2)
    _say(r, "Goodbye!")
    return r


# --- balance whisper on the customer leg -------------------------------------

def spoken_amount(amount: float) -> str:
    """12.5 -> "12 dollars and 50 cents"; whole amounts drop the cents."""
    dollars, cents = divmod(int(round(amount * 100)), 100)
    return f"{dollars} dollars and {cents} cents" if cents else f"{dollars} dollars"


def balance_offer(store_name: str, balance: float, action_url: str) -> VoiceResponse:
    r = VoiceResponse()
    gather = r.gather(num_digits=1, action=action_url, method="POST", timeout=CONTINUE_TIMEOUT)
    _say(gather, f"Hello, this is {store_name}. You have an outstanding balance of {spoken_amount(balance)}. "
                 "Press 3 to make a payment now, or stay on the line to speak with us.")
    # silence leaves the customer on the line with the store
    _say(r, "Connecting you now.")
    return r
