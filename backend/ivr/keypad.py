# backend/ivr/keypad.py
from enum import Enum
from typing import Optional


class Keypress(Enum):
    """DTMF input decoded once at the webhook boundary."""
    ONE = "1"
    TWO = "2"
    THREE = "3"
    NONE = "none"        # Gather timed out or no Digits were posted
    INVALID = "invalid"  # anything else


def decode_digits(raw: Optional[str]) -> Keypress:
    value = (raw or "").strip()
    if not value:
        return Keypress.NONE
    for key in (Keypress.ONE, Keypress.TWO, Keypress.THREE):
        if value == key.value:
            return key
    return Keypress.INVALID
