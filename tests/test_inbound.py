from datetime import timedelta

from conftest import NOW, make_contact
from wa_inbox.conversations import schemas
from wa_inbox.conversations.inbound import InboundProcessor
from wa_inbox.conversations.models import InboundMessage, MediaAttachment
from wa_inbox.conversations.repository import InMemoryConversationRepository
from wa_inbox.conversations.window import WindowManager
from wa_inbox.core.errors import DuplicateContactError


def _inbound(sid="SM1", phone="+5511999990000", body="Oi", **kwargs):
    return InboundMessage(message_sid=sid, from_phone=phone, body=body, **kwargs)


def test_first_message_creates_contact_conversation_and_window(convo_repo, clock):
    processor = InboundProcessor(convo_repo, clock=clock)

    result = processor.process(_inbound(profile_name="Ana Souza"))

    assert result.processed
    contact = convo_repo.get_contact_by_phone("+5511999990000")
    assert contact.name == "Ana Souza"
    conversation = convo_repo.latest_conversation_for_contact(contact.id)
    assert str(conversation.id) == result.conversation_id
    assert conversation.status == schemas.ConversationStatus.OPEN
    assert conversation.visibility == schemas.Visibility.ACTIVE
    assert conversation.window_expires_at == NOW + timedelta(hours=24)
    assert conversation.last_message_at == NOW
    [message] = convo_repo.list_messages(conversation.id)
    assert message.direction == schemas.MessageDirection.INBOUND
    assert message.content == "Oi"
    assert message.message_type == schemas.MessageType.TEXT


def test_contact_name_falls_back_to_wa_id_then_phone(convo_repo, clock):
    processor = InboundProcessor(convo_repo, clock=clock)
    processor.process(_inbound(sid="SM1", phone="+551100000001", wa_id="551100000001"))
    processor.process(_inbound(sid="SM2", phone="+551100000002"))

    assert convo_repo.get_contact_by_phone("+551100000001").name == "551100000001"
    assert convo_repo.get_contact_by_phone("+551100000002").name == "+551100000002"


def test_reply_to_campaign_activates_dormant_conversation(convo_repo, clock):
    contact = convo_repo.add_contact(make_contact("+5511999990000", "Ana"))
    dormant = convo_repo.create_conversation(
        contact.id, now=NOW, visibility=schemas.Visibility.DORMANT
    )
    clock.advance(hours=3)

    result = InboundProcessor(convo_repo, clock=clock).process(_inbound())

    assert result.activated
    conversation = convo_repo.get_conversation(dormant.id)
    assert conversation.visibility == schemas.Visibility.ACTIVE
    assert conversation.activated_at == clock()


def test_message_reopens_closed_conversation(convo_repo, clock):
    processor = InboundProcessor(convo_repo, clock=clock)
    first = processor.process(_inbound(sid="SM1"))
    clock.advance(hours=30)
    WindowManager(convo_repo, clock=clock).sweep()

    second = processor.process(_inbound(sid="SM2", body="Still there?"))

    assert second.reopened
    assert second.conversation_id == first.conversation_id
    conversation = convo_repo.get_conversation(
        convo_repo.get_message_by_sid("SM2").conversation_id
    )
    assert conversation.status == schemas.ConversationStatus.OPEN
    assert conversation.window_expires_at == clock() + timedelta(hours=24)


def test_uses_most_recent_conversation(convo_repo, clock):
    contact = convo_repo.add_contact(make_contact("+5511999990000"))
    convo_repo.create_conversation(contact.id, now=NOW - timedelta(days=3))
    latest = convo_repo.create_conversation(contact.id, now=NOW - timedelta(days=1))

    result = InboundProcessor(convo_repo, clock=clock).process(_inbound())

    assert result.conversation_id == str(latest.id)


def test_unsupported_attachment_is_not_primary_media(convo_repo, clock):
    inbound = _inbound(
        body="",
        media=[
            MediaAttachment(url="https://media.example/1", content_type="application/x-msdownload"),
            MediaAttachment(url="https://media.example/2", content_type="image/png"),
        ],
    )

    InboundProcessor(convo_repo, clock=clock).process(inbound)

    message = convo_repo.get_message_by_sid("SM1")
    assert message.message_type == schemas.MessageType.IMAGE
    assert message.media_url == "https://media.example/2"
    assert message.media_content_type == "image/png"
    assert message.content == "Image message"


def test_only_unsupported_media_stores_text_message(convo_repo, clock):
    inbound = _inbound(
        body="",
        media=[MediaAttachment(url="https://media.example/1", content_type="application/zip")],
    )

    result = InboundProcessor(convo_repo, clock=clock).process(inbound)

    assert result.processed
    message = convo_repo.get_message_by_sid("SM1")
    assert message.message_type == schemas.MessageType.TEXT
    assert message.media_url is None


def test_duplicate_message_sid_is_acknowledged_once(convo_repo, clock):
    processor = InboundProcessor(convo_repo, clock=clock)
    processor.process(_inbound())
    result = processor.process(_inbound())

    assert result.processed and result.duplicate
    assert len(convo_repo.messages) == 1


class _RacingRepository(InMemoryConversationRepository):
    """Simulates another request inserting the contact between read and insert."""

    def __init__(self):
        super().__init__()
        self._raced = False

    def get_contact_by_phone(self, phone_number):
        if not self._raced:
            return None
        return super().get_contact_by_phone(phone_number)

    def create_contact(self, phone_number, name, *, now):
        super().create_contact(phone_number, "Other request", now=now)
        self._raced = True
        raise DuplicateContactError(f"Contact with phone {phone_number} already exists")


def test_concurrent_contact_insert_is_resolved_by_reread(clock):
    repo = _RacingRepository()

    result = InboundProcessor(repo, clock=clock).process(_inbound())

    assert result.processed
    assert len(repo.contacts) == 1
    assert repo.get_contact_by_phone("+5511999990000").name == "Other request"


class _BrokenRepository(InMemoryConversationRepository):
    def add_message(self, *args, **kwargs):
        raise RuntimeError("database is down")


def test_internal_failure_is_reported_not_raised(clock):
    result = InboundProcessor(_BrokenRepository(), clock=clock).process(_inbound())

    assert not result.processed
    assert "database is down" in result.error
