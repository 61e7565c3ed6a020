# backend/transport/telephony.py
import re
import logging
from typing import Optional
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from config import ConfigurationError, ProviderSettings, provider_settings

log = logging.getLogger(__name__)


class CallPlacementError(RuntimeError):
    """The provider refused to create the call."""


def normalize_phone(raw: Optional[str]) -> str:
    """
    E.164-ish form used for dialing: digits only, US country code added to
    bare 10-digit numbers, leading '+'.
    """
    digits = re.sub(r"\D", "", str(raw) if raw is not None else "")
    if not digits:
        return ""
    if len(digits) == 10 and not digits.startswith("1"):
        digits = "1" + digits
    return "+" + digits


class TelephonyClient:
    """
    Outbound call placement against a SignalWire space.

    The space speaks the Twilio-compatible LaML REST dialect, so twilio's REST
    client is reused with its API domain pointed at the space.
    """

    def __init__(self, settings: ProviderSettings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    def ensure_configured(self):
        """Raise ConfigurationError before anything is written for a call that cannot be placed."""
        self.settings.require()

    @property
    def client(self) -> Client:
        if self._client is None:
            client = Client(self.settings.project_id, self.settings.api_token)
            client.api.base_url = f"https://{self.settings.space_url}/api/laml"
            self._client = client
        return self._client

    def place_call(self, to: str, twiml: str, status_callback: Optional[str] = None) -> str:
        """Ask the provider to dial `to` and run `twiml` once answered. Returns the provider call sid."""
        self.ensure_configured()
        kwargs = {"to": to, "from_": self.settings.from_number, "twiml": twiml}
        if status_callback:
            kwargs["status_callback"] = status_callback
            kwargs["status_callback_event"] = ["completed"]
            kwargs["status_callback_method"] = "POST"
        try:
            call = self.client.calls.create(**kwargs)
        except TwilioRestException as e:
            log.error("provider rejected call to %s: %s", to, e.msg)
            raise CallPlacementError(e.msg or "Failed to initiate call") from e
        log.info("provider accepted call to %s: %s", to, call.sid)
        return call.sid


def get_telephony_client() -> TelephonyClient:
    """FastAPI dependency; configuration is checked by the flows that place calls."""
    return TelephonyClient(provider_settings())


__all__ = ["CallPlacementError", "ConfigurationError", "TelephonyClient", "get_telephony_client", "normalize_phone"]
