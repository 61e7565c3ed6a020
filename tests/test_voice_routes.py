from urllib.parse import parse_qs, urlsplit

import pytest

from data import store
from ivr.context import CallContext

CALLER = "+15551234567"


def said(root):
    return [el.text for el in root.iter("Say")]


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def known_caller():
    return store.create_customer("Ann Reader", "(555) 123-4567")


def test_webhooks_answer_xml(client, configured_store):
    resp = client.post("/ivr/voice/incoming", data={"From": CALLER, "CallSid": "CA1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")


class TestIncoming:
    def test_known_caller_with_message(self, client, configured_store, known_caller, twiml_of):
        pm = store.create_pending_message(known_caller.id, "Your book is ready", phone_number=CALLER)
        root = twiml_of(client.post("/ivr/voice/incoming", data={"From": CALLER, "CallSid": "CA1"}))

        assert said(root)[0] == "Welcome to New Square Books."
        assert "Press 1 to listen to your message." in said(root)
        params = query_of(root.find("Gather").get("action"))
        assert params["pending_message_id"] == str(pm.id)
        assert params["customer_name"] == "Ann Reader"
        assert params["forward_number"] == "+18455550199"
        assert params["caller_number"] == CALLER

        call = store.get_call(int(params["call_log_id"]))
        assert (call.direction, call.status, call.call_sid) == ("inbound", "ringing", "CA1")
        assert call.customer_id == known_caller.id

    def test_unknown_caller_without_message(self, client, configured_store, twiml_of):
        root = twiml_of(client.post("/ivr/voice/incoming", data={"From": "+15550001111"}))
        assert "Press 1 for any previous messages." in said(root)
        params = query_of(root.find("Gather").get("action"))
        assert params["customer_name"] == "Unknown caller"
        assert "pending_message_id" not in params

    def test_no_forward_number_configured(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/incoming", data={"From": CALLER}))
        assert said(root) == [
            "Thank you for calling the bookstore. We are currently unavailable. Please try again later."
        ]
        assert root[-1].tag == "Hangup"

    def test_accepts_json_payload(self, client, configured_store, twiml_of):
        root = twiml_of(client.post("/ivr/voice/incoming", json={"from": CALLER, "call_sid": "CA2"}))
        assert root.find("Gather") is not None

    def test_store_failure_still_answers(self, client, configured_store, twiml_of, monkeypatch):
        def broken(phone):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "find_customer_by_phone", broken)
        resp = client.post("/ivr/voice/incoming", data={"From": CALLER})
        assert resp.status_code == 200
        assert said(twiml_of(resp)) == ["Sorry, we are experiencing technical difficulties. Please try again later."]


def menu_url(**fields):
    ctx = CallContext(customer_name="Ann Reader", caller_number=CALLER, forward_number="+18455550199", **fields)
    return ctx.url("", "/ivr/voice/menu-selection")


class TestMenuSelection:
    def test_one_with_message_plays_it(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1, pending_message_id=5), data={"Digits": "1"}))
        target = root.find("Redirect").text
        assert urlsplit(target).path == "/ivr/voice/play-message"
        assert query_of(target)["pending_message_id"] == "5"

    def test_one_without_message_returns_to_menu(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1), data={"Digits": "1"}))
        assert said(root) == ["You have no pending messages."]
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/menu"

    def test_two_connects(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1), data={"Digits": "2"}))
        target = root.find("Redirect").text
        assert urlsplit(target).path == "/ivr/voice/connect"
        assert query_of(target)["forward_number"] == "+18455550199"

    def test_three_without_payment_line_connects(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1), data={"Digits": "3"}))
        assert said(root) == ["Phone payments are not available right now."]
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/connect"

    def test_three_with_payment_line(self, client, twiml_of, monkeypatch):
        monkeypatch.setenv("PHONE_PAYMENT_URL", "https://pay.example.com/phone-payment")
        root = twiml_of(client.post(menu_url(call_log_id=1, customer_id=3), data={"Digits": "3"}))
        target = root.find("Redirect").text
        assert target.startswith("https://pay.example.com/phone-payment?")
        assert query_of(target)["customer_id"] == "3"

    def test_invalid_digit_replays_menu(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1), data={"Digits": "7"}))
        assert said(root) == ["Invalid selection. Please try again."]
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/menu"

    def test_no_digits_says_goodbye(self, client, twiml_of):
        root = twiml_of(client.post(menu_url(call_log_id=1)))
        assert said(root) == ["We didn't receive your selection. Goodbye."]
        assert root[-1].tag == "Hangup"

    def test_replayed_menu_keeps_context(self, client, configured_store, twiml_of):
        path = CallContext(call_log_id=1, pending_message_id=5, forward_number="+18455550199").url("", "/ivr/voice/menu")
        root = twiml_of(client.post(path))
        assert "Press 1 to listen to your message." in said(root)
        assert query_of(root.find("Gather").get("action"))["pending_message_id"] == "5"


def play_url(**fields):
    ctx = CallContext(call_log_id=1, customer_name="Ann Reader", forward_number="+18455550199", **fields)
    return ctx.url("", "/ivr/voice/play-message")


class TestPlayMessage:
    def test_plays_and_marks_played(self, client, twiml_of):
        pm = store.create_pending_message(1, "Your book is ready", phone_number=CALLER)
        root = twiml_of(client.post(play_url(pending_message_id=pm.id)))
        assert said(root)[:2] == ["Here is your message:", "Your book is ready"]
        assert urlsplit(root.find("Gather").get("action")).path == "/ivr/voice/connect"
        assert store.get_pending_message(pm.id).is_played

    def test_skip_with_two(self, client, twiml_of):
        pm = store.create_pending_message(1, "Your book is ready", phone_number=CALLER)
        root = twiml_of(client.post(play_url(pending_message_id=pm.id), data={"Digits": "2"}))
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/connect"
        assert not store.get_pending_message(pm.id).is_played

    def test_missing_message_connects(self, client, twiml_of):
        root = twiml_of(client.post(play_url(pending_message_id=404)))
        assert said(root) == []
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/connect"

    def test_no_message_id_connects(self, client, twiml_of):
        root = twiml_of(client.post(play_url()))
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/connect"


class TestConnect:
    def test_forwards_through_whisper(self, client, twiml_of):
        path = CallContext(call_log_id=8, customer_name="Ann Reader", caller_number=CALLER,
                           forward_number="+18455550199").url("", "/ivr/voice/connect")
        root = twiml_of(client.post(path))
        assert said(root)[0] == "Please hold while we connect you."
        dial = root.find("Dial")
        assert dial.get("callerId") == CALLER
        assert query_of(dial.get("action")) == {"call_log_id": "8"}
        number = dial.find("Number")
        assert number.text == "+18455550199"
        assert urlsplit(number.get("url")).path == "/ivr/voice/whisper"
        assert query_of(number.get("url")) == {"call_log_id": "8", "customer_name": "Ann Reader"}

    def test_without_forward_number(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/connect?call_log_id=8"))
        assert said(root) == ["We're sorry, we are currently unavailable. Please try again later. Goodbye."]
        assert root[-1].tag == "Hangup"

    def test_defaults_customer_name(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/connect?forward_number=%2B18455550199"))
        whisper = root.find("Dial").find("Number").get("url")
        assert query_of(whisper)["customer_name"] == "Customer"


class TestWhisper:
    def test_prompt(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/whisper?call_log_id=8&customer_name=Ann+Reader"))
        assert said(root)[0] == "Incoming call from Ann Reader. Press 1 to accept the call."
        assert query_of(root.find("Gather").get("action"))["step"] == "confirm"
        assert root[-1].tag == "Hangup"

    def test_accept(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/whisper?call_log_id=8&step=confirm", data={"Digits": "1"}))
        assert said(root) == ["Connecting you now."]
        assert root.find("Hangup") is None

    def test_anything_else_hangs_up(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/whisper?call_log_id=8&step=confirm", data={"Digits": "9"}))
        assert said(root) == ["No response received. Goodbye."]
        assert root[-1].tag == "Hangup"

    def test_digits_without_step_are_confirmation(self, client, twiml_of):
        root = twiml_of(client.post("/ivr/voice/whisper?call_log_id=8", data={"Digits": "1"}))
        assert said(root) == ["Connecting you now."]


class TestClickToCallConnect:
    def path(self, call_log_id):
        return CallContext(call_log_id=call_log_id, customer_name="Ann Reader",
                           customer_phone=CALLER).url("", "/ivr/voice/click-to-call-connect")

    def test_pressing_one_dials_customer(self, client, twiml_of):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        root = twiml_of(client.post(self.path(call.id), data={"Digits": "1"}))
        assert said(root)[0] == "Connecting you to Ann Reader now."
        dial = root.find("Dial")
        assert dial.find("Number").text == CALLER
        assert query_of(dial.get("action")) == {"call_log_id": str(call.id)}
        assert store.get_call(call.id).status == "in_progress"

    def test_timeout_fails_the_call(self, client, twiml_of):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        root = twiml_of(client.post(self.path(call.id), data={"Digits": ""}))
        assert said(root) == ["Call cancelled. Goodbye."]
        failed = store.get_call(call.id)
        assert failed.status == "failed"
        assert failed.notes == "User did not press 1 to connect"

    def test_other_digit_fails_the_call(self, client, twiml_of):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        twiml_of(client.post(self.path(call.id), data={"Digits": "2"}))
        assert store.get_call(call.id).status == "failed"

    def test_missing_customer_phone(self, client, twiml_of):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        root = twiml_of(client.post(f"/ivr/voice/click-to-call-connect?call_log_id={call.id}", data={"Digits": "1"}))
        assert root[-1].tag == "Hangup"
        assert store.get_call(call.id).status == "failed"


class TestCallStatus:
    def test_dial_action_completed(self, client, twiml_of):
        call = store.create_call("inbound", CALLER, "Ann Reader", status="ringing")
        resp = client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                           data={"DialCallStatus": "completed", "DialCallDuration": "40", "CallSid": "CA1"})
        assert len(twiml_of(resp)) == 0
        updated = store.get_call(call.id)
        assert (updated.status, updated.duration_seconds) == ("completed", 40)

    def test_dial_action_not_answered(self, client, twiml_of):
        call = store.create_call("inbound", CALLER, "Ann Reader", status="ringing")
        root = twiml_of(client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                                    data={"DialCallStatus": "no-answer"}))
        assert said(root) == ["The call was not answered. Goodbye."]
        assert store.get_call(call.id).status == "no_answer"

    @pytest.mark.parametrize("raw, stored", [("busy", "busy"), ("failed", "failed"), ("canceled", "missed")])
    def test_status_callback_mapping(self, client, raw, stored):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        client.post(f"/ivr/voice/call-status?call_log_id={call.id}", data={"CallStatus": raw, "CallDuration": "0"})
        assert store.get_call(call.id).status == stored

    def test_answered_by_is_recorded(self, client):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="in_progress")
        client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                    data={"CallStatus": "completed", "CallDuration": "12", "AnsweredBy": "machine_start"})
        assert store.get_call(call.id).answered_by == "machine_start"

    def test_plain_callback_does_not_overwrite_dial_outcome(self, client):
        call = store.create_call("inbound", CALLER, "Ann Reader", status="ringing")
        client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                    data={"DialCallStatus": "no-answer", "DialCallDuration": "0"})
        client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                    data={"CallStatus": "completed", "CallDuration": "31"})
        assert store.get_call(call.id).status == "no_answer"

    def test_failed_call_is_not_revived(self, client):
        call = store.create_call("outbound", CALLER, "Ann Reader")
        store.mark_call_failed(call.id, "User did not press 1 to connect")
        client.post(f"/ivr/voice/call-status?call_log_id={call.id}", data={"CallStatus": "completed"})
        assert store.get_call(call.id).status == "failed"

    def test_unknown_row_still_answers(self, client, twiml_of):
        resp = client.post("/ivr/voice/call-status?call_log_id=999", data={"CallStatus": "completed"})
        assert resp.status_code == 200
        twiml_of(resp)

    def test_store_error_still_answers(self, client, twiml_of, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "get_call", broken)
        resp = client.post("/ivr/voice/call-status?call_log_id=1", data={"CallStatus": "completed"})
        assert resp.status_code == 200
        assert len(twiml_of(resp)) == 0


class TestNotificationStatus:
    def test_heard_notification_is_deleted(self, client, twiml_of):
        pm = store.create_pending_message(1, "Your order is ready", phone_number=CALLER)
        resp = client.post(f"/ivr/voice/notification-status?pending_message_id={pm.id}",
                           data={"CallStatus": "completed", "CallDuration": "12"})
        assert len(twiml_of(resp)) == 0
        assert store.get_pending_message(pm.id) is None

    @pytest.mark.parametrize("data", [
        {"CallStatus": "completed", "CallDuration": "3"},
        {"CallStatus": "completed", "CallDuration": "5"},
        {"CallStatus": "no-answer", "CallDuration": "0"},
        {"CallStatus": "busy"},
    ])
    def test_unheard_notification_is_kept(self, client, data):
        pm = store.create_pending_message(1, "Your order is ready", phone_number=CALLER)
        client.post(f"/ivr/voice/notification-status?pending_message_id={pm.id}", data=data)
        assert store.get_pending_message(pm.id) is not None

    def test_repeated_callback_is_harmless(self, client):
        pm = store.create_pending_message(1, "Your order is ready", phone_number=CALLER)
        for _ in range(2):
            resp = client.post(f"/ivr/voice/notification-status?pending_message_id={pm.id}",
                               data={"CallStatus": "completed", "CallDuration": "12"})
            assert resp.status_code == 200

    def test_without_id(self, client, twiml_of):
        resp = client.post("/ivr/voice/notification-status", data={"CallStatus": "completed"})
        assert resp.status_code == 200
        assert len(twiml_of(resp)) == 0


def test_unparseable_duration_still_records_status(client):
    call = store.create_call("inbound", CALLER, "Ann Reader", status="ringing")
    client.post(f"/ivr/voice/call-status?call_log_id={call.id}",
                data={"DialCallStatus": "completed", "DialCallDuration": "Infinity"})
    updated = store.get_call(call.id)
    assert (updated.status, updated.duration_seconds) == ("completed", 0)


class TestGetWebhooks:
    def test_menu_selection_reads_digits_from_query(self, client, twiml_of):
        root = twiml_of(client.get(menu_url(call_log_id=1) + "&Digits=2"))
        assert urlsplit(root.find("Redirect").text).path == "/ivr/voice/connect"

    def test_incoming_reads_caller_from_query(self, client, configured_store, known_caller, twiml_of):
        root = twiml_of(client.get("/ivr/voice/incoming", params={"From": CALLER, "CallSid": "CA3"}))
        params = query_of(root.find("Gather").get("action"))
        assert params["customer_name"] == "Ann Reader"
        assert store.get_call(int(params["call_log_id"])).call_sid == "CA3"

    def test_status_callback_reads_query(self, client):
        call = store.create_call("outbound", CALLER, "Ann Reader", status="ringing")
        client.get(f"/ivr/voice/call-status?call_log_id={call.id}&CallStatus=busy")
        assert store.get_call(call.id).status == "busy"


class TestBalanceWhisper:
    @pytest.fixture
    def owing(self):
        return store.create_customer("Ann Reader", CALLER, outstanding_balance=12.5)

    def connect_path(self, call_log_id, customer_id):
        return CallContext(call_log_id=call_log_id, customer_id=customer_id, customer_name="Ann Reader",
                           customer_phone=CALLER).url("", "/ivr/voice/click-to-call-connect")

    def whisper_path(self, customer_id, **extra):
        return CallContext(call_log_id=1, customer_id=customer_id, customer_name="Ann Reader",
                           caller_number=CALLER).url("", "/ivr/voice/customer-whisper", **extra)

    def test_customer_with_balance_gets_whisper(self, client, owing, twiml_of):
        call = store.create_call("outbound", CALLER, "Ann Reader", owing.id, status="ringing")
        root = twiml_of(client.post(self.connect_path(call.id, owing.id), data={"Digits": "1"}))
        whisper = root.find("Dial/Number").get("url")
        assert urlsplit(whisper).path == "/ivr/voice/customer-whisper"
        assert query_of(whisper) == {"call_log_id": str(call.id), "customer_id": str(owing.id),
                                     "customer_name": "Ann Reader", "caller_number": CALLER}

    def test_customer_without_balance_is_bridged_directly(self, client, twiml_of):
        paid_up = store.create_customer("Bob", "+15559876543")
        call = store.create_call("outbound", "+15559876543", "Bob", paid_up.id, status="ringing")
        root = twiml_of(client.post(self.connect_path(call.id, paid_up.id), data={"Digits": "1"}))
        assert root.find("Dial/Number").get("url") is None

    def test_announces_balance(self, client, configured_store, owing, twiml_of):
        root = twiml_of(client.post(self.whisper_path(owing.id)))
        gather = root.find("Gather")
        assert "outstanding balance of 12 dollars and 50 cents" in gather.find("Say").text
        assert "Hello, this is New Square Books." in gather.find("Say").text
        assert query_of(gather.get("action"))["step"] == "confirm"

    def test_three_goes_to_payment(self, client, configured_store, owing, twiml_of, monkeypatch):
        monkeypatch.setenv("PHONE_PAYMENT_URL", "https://pay.example.com/phone-payment")
        root = twiml_of(client.post(self.whisper_path(owing.id, step="confirm"), data={"Digits": "3"}))
        target = root.find("Redirect").text
        assert target.startswith("https://pay.example.com/phone-payment?")
        params = query_of(target)
        assert params["customer_id"] == str(owing.id)
        assert params["forward_number"] == "+18455550199"

    def test_three_without_payment_line_connects(self, client, owing, twiml_of):
        root = twiml_of(client.post(self.whisper_path(owing.id, step="confirm"), data={"Digits": "3"}))
        assert said(root) == ["Phone payments are not available right now. Connecting you now."]
        assert root.find("Hangup") is None

    def test_other_key_connects(self, client, owing, twiml_of):
        root = twiml_of(client.post(self.whisper_path(owing.id, step="confirm"), data={"Digits": "1"}))
        assert said(root) == ["Connecting you now."]

    def test_settled_balance_connects(self, client, twiml_of):
        root = twiml_of(client.post(self.whisper_path(404)))
        assert said(root) == ["Connecting you now."]
        assert root.find("Gather") is None

    def test_store_error_connects(self, client, owing, twiml_of, monkeypatch):
        def broken(customer_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "get_customer", broken)
        resp = client.post(self.whisper_path(owing.id))
        assert resp.status_code == 200
        assert said(twiml_of(resp)) == ["Connecting you now."]
