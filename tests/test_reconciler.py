import uuid
from datetime import timedelta

import pytest

from conftest import NOW, make_campaign, make_contact, make_template
from wa_inbox.campaigns.models import StatusCallback
from wa_inbox.campaigns.reconciler import (
    DeliveryReconciler,
    can_transition,
    compute_analytics,
    is_settled,
    map_provider_status,
)
from wa_inbox.campaigns.schemas import CampaignMessageStatus as S
from wa_inbox.campaigns.schemas import CampaignStatus


@pytest.fixture
def sent_messages(campaign_repo, clock):
    """A running campaign with two messages already handed to the provider."""
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [])
    rows = []
    for index, phone in enumerate(("+5511900000001", "+5511900000002"), start=1):
        contact = make_contact(phone)
        row, _ = campaign_repo.get_or_create_campaign_message(
            campaign.id, contact.id, phone, now=NOW
        )
        campaign_repo.mark_message_sent(row.id, f"SM{index}", now=NOW)
        rows.append(row)
    return campaign, rows


def _apply(reconciler, sid, status, **kwargs):
    return reconciler.apply(StatusCallback(message_sid=sid, status=status, **kwargs))


@pytest.mark.parametrize(
    "provider, expected",
    [
        ("queued", S.PENDING),
        ("sent", S.SENT),
        ("delivered", S.DELIVERED),
        ("READ", S.READ),
        ("undelivered", S.FAILED),
        ("failed", S.FAILED),
        ("mystery", None),
    ],
)
def test_map_provider_status(provider, expected):
    assert map_provider_status(provider) == expected


def test_transitions_only_move_forward():
    assert can_transition(S.PENDING, S.SENT)
    assert can_transition(S.SENT, S.READ)
    assert can_transition(S.SENT, S.FAILED)
    assert not can_transition(S.READ, S.DELIVERED)
    assert not can_transition(S.DELIVERED, S.SENT)
    assert not can_transition(S.DELIVERED, S.FAILED)
    assert not can_transition(S.FAILED, S.DELIVERED)


def test_out_of_order_callbacks_keep_read(campaign_repo, clock, sent_messages):
    _, rows = sent_messages
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    assert _apply(reconciler, "SM1", "read")
    clock.advance(minutes=1)
    assert not _apply(reconciler, "SM1", "delivered")

    message = campaign_repo.messages[rows[0].id]
    assert message.status == S.READ
    assert message.read_at == NOW
    assert message.delivered_at == NOW


def test_delivered_then_read_keeps_first_delivery_time(campaign_repo, clock, sent_messages):
    _, rows = sent_messages
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    _apply(reconciler, "SM1", "delivered")
    clock.advance(minutes=5)
    _apply(reconciler, "SM1", "read")

    message = campaign_repo.messages[rows[0].id]
    assert message.status == S.READ
    assert message.delivered_at == NOW
    assert message.read_at == NOW + timedelta(minutes=5)


def test_failure_records_provider_error(campaign_repo, clock, sent_messages):
    _, rows = sent_messages
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    assert _apply(
        reconciler, "SM2", "undelivered", error_code="63016", error_message="Media unreachable"
    )

    message = campaign_repo.messages[rows[1].id]
    assert message.status == S.FAILED
    assert message.error_code == "63016"
    assert message.error_message == "Media unreachable"


def test_unknown_sid_and_duplicate_callbacks_are_noops(campaign_repo, clock, sent_messages):
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    assert not _apply(reconciler, "SM-unknown", "delivered")
    assert _apply(reconciler, "SM1", "delivered")
    assert not _apply(reconciler, "SM1", "delivered")
    assert not _apply(reconciler, "SM1", "queued")


def test_campaign_completes_once_every_message_settles(campaign_repo, clock, sent_messages):
    campaign, _ = sent_messages
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    _apply(reconciler, "SM1", "delivered")
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.RUNNING

    _apply(reconciler, "SM2", "failed")
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.COMPLETED


def test_analytics_follow_message_rows(campaign_repo, clock, sent_messages):
    campaign, _ = sent_messages
    reconciler = DeliveryReconciler(campaign_repo, clock=clock)

    _apply(reconciler, "SM1", "read")
    _apply(reconciler, "SM2", "delivered")

    analytics = campaign_repo.get_analytics(campaign.id)
    assert analytics.total_sent == 2
    assert analytics.total_delivered == 2
    assert analytics.total_read == 1
    assert analytics.delivery_rate == 100.0
    assert analytics.read_rate == 50.0
    assert reconciler.refresh(campaign.id).model_dump(exclude={"updated_at"}) == analytics.model_dump(
        exclude={"updated_at"}
    )


def test_compute_analytics_rates_and_empty_counts():
    campaign_id = uuid.uuid4()

    empty = compute_analytics(campaign_id, {})
    assert empty.total_sent == 0
    assert empty.delivery_rate == 0.0
    assert empty.read_rate == 0.0

    analytics = compute_analytics(
        campaign_id, {"pending": 1, "sent": 1, "delivered": 1, "read": 1, "failed": 0}
    )
    assert analytics.total_pending == 1
    assert analytics.total_sent == 3
    assert analytics.total_delivered == 2
    assert analytics.delivery_rate == 66.67
    assert analytics.read_rate == 50.0


def test_is_settled():
    assert is_settled({"delivered": 3, "failed": 1})
    assert not is_settled({"delivered": 3, "sent": 1})
    assert not is_settled({"pending": 1})
