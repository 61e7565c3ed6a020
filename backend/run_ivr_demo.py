"""
Walk a few calls through the webhooks in-process and print what the switch
would be told at each step. No provider account is needed: nothing here
places a real call.
"""
import os
import xml.etree.ElementTree as ET
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from urllib.parse import urlsplit

load_dotenv()
os.environ.setdefault("PUBLIC_BASE_URL", "https://ivr.example.com")

from asgi import app  # noqa: E402
from data import store  # noqa: E402

DEMO_CASES = {
    "message_then_representative": ["1", "5", "1"],
    "straight_to_representative": ["2", "1"],
    "invalid_then_silence": ["9", ""],
}

CALLER = "+15551234567"


def local(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}" if parts.query else parts.path


def next_step(document: str):
    """The continuation the switch would follow, and whether it collects a keypress."""
    root = ET.fromstring(document.encode("utf-8"))
    gather = root.find("Gather")
    if gather is not None:
        return gather.get("action"), True
    redirect = root.find("Redirect")
    if redirect is not None:
        return redirect.text, False
    number = root.find("Dial/Number")
    if number is not None:
        return number.get("url"), False
    return "", False


def main():
    print("=== Bookstore IVR Demo ===")
    with TestClient(app) as client:
        store.save_store_settings(store_name="New Square Books", store_cell_phone="(845) 555-0199")
        if not store.find_customer_by_phone(CALLER):
            store.create_customer("Ann Reader", CALLER)

        for label, keys in DEMO_CASES.items():
            store.create_pending_message(None, "Your book is ready for pickup.", phone_number=CALLER)
            print(f"\n--- CASE: {label} ({CALLER}) ---")
            resp = client.post("/ivr/voice/incoming", data={"From": CALLER, "CallSid": f"CA_DEMO_{label}"})
            print("incoming:\n", resp.text)
            pending = list(keys)
            url, gathers = next_step(resp.text)
            while url:
                if gathers and not pending:
                    break
                data = {"Digits": pending.pop(0)} if gathers else {}
                resp = client.post(local(url), data=data)
                print(f"\n{urlsplit(url).path} {data}:\n", resp.text)
                url, gathers = next_step(resp.text)


if __name__ == "__main__":
    main()
