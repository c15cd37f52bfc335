import pytest

from wa_inbox.conversations.models import MediaAttachment
from wa_inbox.conversations.schemas import MessageType
from wa_inbox.core.errors import MediaValidationError
from wa_inbox.media import (
    derive_message_type,
    is_allowed_content_type,
    placeholder_text,
    primary_attachment,
    validate_outbound_media,
    validate_upload,
)


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("image/png", MessageType.IMAGE),
        ("video/quicktime", MessageType.VIDEO),
        ("audio/ogg; codecs=opus", MessageType.AUDIO),
        ("application/pdf", MessageType.DOCUMENT),
        ("text/csv", MessageType.DOCUMENT),
    ],
)
def test_derive_message_type(content_type, expected):
    assert derive_message_type(content_type) == expected


def test_allow_list_ignores_parameters_and_case():
    assert is_allowed_content_type("Text/Plain; charset=utf-8")
    assert not is_allowed_content_type("application/zip")
    assert not is_allowed_content_type(None)


def test_primary_attachment_skips_disallowed():
    media = [
        MediaAttachment(url="https://m/1", content_type="application/x-msdownload"),
        MediaAttachment(url="", content_type="image/png"),
        MediaAttachment(url="https://m/3", content_type="audio/mpeg"),
    ]
    assert primary_attachment(media).url == "https://m/3"
    assert primary_attachment(media[:2]) is None


def test_placeholder_text():
    assert placeholder_text(MessageType.DOCUMENT) == "Document message"


def test_outbound_text_has_no_media():
    assert validate_outbound_media(MessageType.TEXT, "https://ignored", None) is None


def test_outbound_media_requires_url():
    with pytest.raises(MediaValidationError):
        validate_outbound_media(MessageType.AUDIO, None, None)


def test_outbound_media_normalizes_content_type():
    media = validate_outbound_media(MessageType.AUDIO, "https://m/a.ogg", "Audio/OGG")
    assert media.content_type == "audio/ogg"


def test_upload_limits():
    assert validate_upload("image/jpeg", 1024) == MessageType.IMAGE
    with pytest.raises(MediaValidationError):
        validate_upload("image/jpeg", 0)
    with pytest.raises(MediaValidationError) as excinfo:
        validate_upload("image/jpeg", 2048, max_size=1024)
    assert excinfo.value.details == {"size": 2048, "max_size": 1024}
    with pytest.raises(MediaValidationError) as excinfo:
        validate_upload("application/zip", 10)
    assert excinfo.value.code == "MEDIA_VALIDATION_FAILED"
