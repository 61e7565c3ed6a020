# backend/config.py
import os
from dataclasses import dataclass
from typing import List


class ConfigurationError(RuntimeError):
    """Something the service needs before it may place a call is not configured."""


@dataclass(frozen=True)
class ProviderSettings:
    space_url: str      # <space>.signalwire.com
    project_id: str
    api_token: str
    from_number: str    # caller id outbound calls originate from (E.164)

    def missing(self) -> List[str]:
        names = {
            "SIGNALWIRE_SPACE_URL": self.space_url,
            "SIGNALWIRE_PROJECT_ID": self.project_id,
            "SIGNALWIRE_API_TOKEN": self.api_token,
            "SIGNALWIRE_FROM_NUMBER": self.from_number,
        }
        return [name for name, value in names.items() if not value]

    def require(self) -> "ProviderSettings":
        missing = self.missing()
        if missing:
            raise ConfigurationError("Telephony provider not configured. Missing: " + ", ".join(missing))
        return self


# Read on every call rather than at import so a reloaded .env or a test's
# monkeypatched environment is picked up.

def provider_settings() -> ProviderSettings:
    space = os.environ.get("SIGNALWIRE_SPACE_URL", "").strip()
    space = space.replace("https://", "").replace("http://", "").rstrip("/")
    return ProviderSettings(
        space_url=space,
        project_id=os.environ.get("SIGNALWIRE_PROJECT_ID", "").strip(),
        api_token=os.environ.get("SIGNALWIRE_API_TOKEN", "").strip(),
        from_number=os.environ.get("SIGNALWIRE_FROM_NUMBER", "").strip(),
    )


def public_base_url() -> str:
    # https://<ngrok>.ngrok-free.dev or the deployed host; continuation URLs hang off it
    return os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")


def phone_payment_url() -> str:
    return os.environ.get("PHONE_PAYMENT_URL", "").strip()


def log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()
