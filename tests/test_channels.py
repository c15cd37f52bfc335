from wa_inbox.channels import TwilioWhatsAppAdapter, compute_signature, get_adapter

URL = "https://inbox.example/api/webhooks/twilio/incoming"


def test_parse_incoming_strips_prefix_and_collects_media():
    adapter = TwilioWhatsAppAdapter()

    [message] = adapter.parse_incoming(
        {
            "MessageSid": "SM1",
            "From": "whatsapp:+5511999990000",
            "To": "whatsapp:+14155238886",
            "Body": "Look",
            "ProfileName": "Ana",
            "WaId": "5511999990000",
            "NumMedia": "2",
            "MediaUrl0": "https://media.example/0",
            "MediaContentType0": "image/jpeg",
            "MediaUrl1": "https://media.example/1",
            "MediaContentType1": "application/zip",
        }
    )

    assert message.message_sid == "SM1"
    assert message.from_phone == "+5511999990000"
    assert message.to_phone == "+14155238886"
    assert message.profile_name == "Ana"
    assert message.wa_id == "5511999990000"
    assert [m.content_type for m in message.media] == ["image/jpeg", "application/zip"]


def test_parse_incoming_without_sender_yields_nothing():
    adapter = TwilioWhatsAppAdapter()

    assert list(adapter.parse_incoming({"MessageSid": "SM1", "Body": "hi"})) == []


def test_parse_incoming_tolerates_bad_media_count():
    [message] = TwilioWhatsAppAdapter().parse_incoming(
        {"SmsMessageSid": "SM9", "From": "whatsapp:+1555", "NumMedia": "many"}
    )

    assert message.message_sid == "SM9"
    assert message.media == []
    assert message.body == ""


def test_parse_status_variants():
    adapter = TwilioWhatsAppAdapter()

    failed = adapter.parse_status(
        {"MessageSid": "SM1", "MessageStatus": "UNDELIVERED", "ErrorCode": "63016", "ErrorMessage": "x"}
    )
    assert failed.status == "undelivered"
    assert failed.error_code == "63016"

    read = adapter.parse_status({"MessageSid": "SM1", "MessageStatus": "delivered", "EventType": "READ"})
    assert read.status == "read"

    assert adapter.parse_status({"MessageStatus": "sent"}) is None
    assert adapter.parse_status({"MessageSid": "SM1"}) is None


def test_signature_verification():
    params = {"From": "whatsapp:+1555", "Body": "hi", "MessageSid": "SM1"}
    adapter = TwilioWhatsAppAdapter(auth_token="secret", validate=True)
    signature = compute_signature("secret", URL, params)

    assert adapter.verify_signature(URL, params, {"X-Twilio-Signature": signature})
    assert not adapter.verify_signature(URL, params, {"X-Twilio-Signature": "bogus"})
    assert not adapter.verify_signature(URL, params, {})
    assert not adapter.verify_signature(URL + "?x=1", params, {"X-Twilio-Signature": signature})


def test_signature_checks_disabled_or_unconfigured():
    assert TwilioWhatsAppAdapter(validate=False).verify_signature(URL, {}, {})
    assert not TwilioWhatsAppAdapter(validate=True).verify_signature(
        URL, {}, {"X-Twilio-Signature": "x"}
    )


def test_adapter_follows_settings(monkeypatch):
    from wa_inbox.core.config import reset_settings_cache

    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setenv("TWILIO_VALIDATE_SIGNATURE", "true")
    reset_settings_cache()

    adapter = get_adapter()

    assert adapter.auth_token == "secret"
    assert adapter.validate is True
