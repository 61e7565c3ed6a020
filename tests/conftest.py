"""
Shared fixtures: a throwaway SQLite store per test, a fake provider client,
and a TestClient over the real ASGI app.
"""
from unittest.mock import MagicMock
from urllib.parse import urlsplit
import xml.etree.ElementTree as ET

import pytest
from fastapi.testclient import TestClient

from config import ProviderSettings
from data import store
from transport.telephony import TelephonyClient, get_telephony_client

BASE_URL = "https://ivr.example.com"


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("PUBLIC_BASE_URL", BASE_URL)
    monkeypatch.delenv("PHONE_PAYMENT_URL", raising=False)
    store.init_db(f"sqlite:///{tmp_path / 'ivr.db'}")
    yield
    store.engine.dispose()


@pytest.fixture
def provider_settings() -> ProviderSettings:
    return ProviderSettings(
        space_url="example.signalwire.com",
        project_id="project-123",
        api_token="token-abc",
        from_number="+15550000000",
    )


@pytest.fixture
def rest_client() -> MagicMock:
    client = MagicMock(name="twilio_client")
    client.calls.create.return_value = MagicMock(sid="CA_TEST_SID")
    return client


@pytest.fixture
def telephony(provider_settings, rest_client) -> TelephonyClient:
    return TelephonyClient(provider_settings, client=rest_client)


@pytest.fixture
def client(telephony):
    from asgi import app

    app.dependency_overrides[get_telephony_client] = lambda: telephony
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def configured_store():
    return store.save_store_settings(store_name="New Square Books", store_cell_phone="(845) 555-0199")


def parse_twiml(response) -> ET.Element:
    """Parse a call-control document (TestClient response or raw string)."""
    body = response.content if hasattr(response, "content") else response.encode("utf-8")
    root = ET.fromstring(body)
    assert root.tag == "Response"
    return root


def local_path(url: str) -> str:
    """Path + query of an absolute continuation URL, for posting back through the TestClient."""
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}" if parts.query else parts.path


@pytest.fixture
def twiml_of():
    return parse_twiml


@pytest.fixture
def follow():
    return local_path
