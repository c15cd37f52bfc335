import uuid
from datetime import timedelta

import pytest

from conftest import NOW, FailingTransport, make_campaign, make_contact, make_template, yielding
from wa_inbox.campaigns.schemas import (
    CampaignCreateRequest,
    CampaignStatus,
    ContactGroup,
    JobStatus,
    ScheduleType,
)
from wa_inbox.campaigns.service import CampaignService
from wa_inbox.conversations import schemas as convo_schemas
from wa_inbox.core.errors import (
    NotFoundError,
    PersistenceError,
    StateConflictError,
    TemplateNotApprovedError,
    TransportError,
)


class _RecordingRunner:
    def __init__(self):
        self.submitted = []

    def submit(self, job_id, fn):
        self.submitted.append((job_id, fn))


@pytest.fixture
def runner():
    return _RecordingRunner()


@pytest.fixture
def service_factory(campaign_repo, convo_repo, transport, runner, clock):
    def _make(transport_override=None):
        return CampaignService(
            campaign_repo,
            convo_repo,
            runner=runner,
            job_repositories=lambda: yielding((campaign_repo, convo_repo)),
            transport_factory=lambda: transport_override or transport,
            clock=clock,
            sleep=lambda _s: None,
        )

    return _make


@pytest.fixture
def audience(campaign_repo, convo_repo):
    contacts = [make_contact("+5511900000001", "Ana"), make_contact("+5511900000002", "Bruno")]
    for contact in contacts:
        convo_repo.add_contact(contact)
    group = ContactGroup(id=uuid.uuid4(), name="Customers")
    campaign_repo.add_group(group, contacts)
    return group


def _request(template, group, **overrides):
    data = {"name": "Spring", "templateId": str(template.id), "audienceId": str(group.id)}
    data.update(overrides)
    return CampaignCreateRequest.model_validate(data)


def test_create_immediate_campaign_is_draft(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())

    campaign = service_factory().create_campaign(_request(template, audience), created_by="agent-1")

    assert campaign.status == CampaignStatus.DRAFT
    assert campaign.target_segments == [audience.id]
    assert campaign.created_by == "agent-1"


def test_create_scheduled_campaign(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())
    request = _request(
        template,
        audience,
        scheduleType="scheduled",
        scheduledAt=(NOW + timedelta(days=1)).isoformat(),
    )

    campaign = service_factory().create_campaign(request)

    assert campaign.status == CampaignStatus.SCHEDULED
    assert campaign.schedule_type == ScheduleType.SCHEDULED


def test_create_requires_approved_template(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template(status="pending"))

    with pytest.raises(TemplateNotApprovedError):
        service_factory().create_campaign(_request(template, audience))
    assert campaign_repo.campaigns == {}


def test_create_unknown_template_or_group(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())
    service = service_factory()

    with pytest.raises(NotFoundError):
        service.create_campaign(_request(make_template(), audience))
    with pytest.raises(NotFoundError):
        service.create_campaign(
            _request(template, ContactGroup(id=uuid.uuid4(), name="missing"))
        )


def test_start_dispatch_claims_campaign_once(service_factory, campaign_repo, audience, runner):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory()

    claimed, job = service.start_dispatch(campaign.id, batch_size=10, delay_ms=200)

    assert claimed.status == CampaignStatus.RUNNING
    assert job.status == JobStatus.QUEUED
    assert (job.batch_size, job.delay_ms) == (10, 200)
    assert runner.submitted == []
    with pytest.raises(StateConflictError) as excinfo:
        service.start_dispatch(campaign.id)
    assert excinfo.value.code == "CAMPAIGN_NOT_STARTABLE"


def test_start_dispatch_uses_configured_defaults(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.SCHEDULED)

    _, job = service_factory().start_dispatch(campaign.id)

    assert (job.batch_size, job.delay_ms) == (50, 1000)


def test_start_dispatch_unknown_campaign(service_factory):
    with pytest.raises(NotFoundError):
        service_factory().start_dispatch(uuid.uuid4())


def test_launch_submits_job_to_runner(service_factory, campaign_repo, audience, runner, transport):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory()
    _, job = service.start_dispatch(campaign.id, delay_ms=0)

    service.launch(job)

    [(job_id, worker)] = runner.submitted
    assert job_id == job.id
    worker()
    assert len(transport.sent) == 2


def test_run_job_records_progress(service_factory, campaign_repo, audience, transport):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory()
    _, job = service.start_dispatch(campaign.id, delay_ms=0)

    service.run_job(job)

    stored = service.get_job(campaign.id, job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.total_recipients == 2
    assert stored.sent_count == 2
    assert stored.failed_count == 0
    assert stored.started_at == NOW
    assert stored.finished_at == NOW
    assert stored.log_path.endswith(f"{job.id}.log")
    assert len(transport.sent) == 2
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.RUNNING


def test_run_job_failure_marks_job_and_campaign(service_factory, campaign_repo, audience):
    template = make_template()  # not added to the repository
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory(FailingTransport())
    _, job = service.start_dispatch(campaign.id, delay_ms=0)

    service.run_job(job)

    stored = campaign_repo.get_dispatch_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert "not found" in stored.error
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.FAILED


def test_run_job_survives_a_failed_recipient_write(
    service_factory, campaign_repo, audience, transport, monkeypatch
):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory()
    _, job = service.start_dispatch(campaign.id, delay_ms=0)
    original = campaign_repo.mark_message_sent

    def flaky_mark_sent(message_id, message_sid, *, now):
        if campaign_repo.messages[message_id].phone_number == "+5511900000001":
            raise PersistenceError("connection reset")
        original(message_id, message_sid, now=now)

    monkeypatch.setattr(campaign_repo, "mark_message_sent", flaky_mark_sent)

    service.run_job(job)

    assert len(transport.sent) == 2
    stored = campaign_repo.get_dispatch_job(job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.sent_count == 2
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.RUNNING
    statuses = sorted(m.status.value for m in campaign_repo.list_campaign_messages(campaign.id))
    assert statuses == ["pending", "sent"]


def test_run_job_without_transport_fails_before_sending(
    campaign_repo, convo_repo, runner, clock, audience
):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)

    def unconfigured():
        raise TransportError("Twilio credentials missing", code="TRANSPORT_NOT_CONFIGURED")

    service = CampaignService(
        campaign_repo,
        convo_repo,
        runner=runner,
        job_repositories=lambda: yielding((campaign_repo, convo_repo)),
        transport_factory=unconfigured,
        clock=clock,
        sleep=lambda _s: None,
    )
    _, job = service.start_dispatch(campaign.id, delay_ms=0)

    service.run_job(job)

    assert campaign_repo.get_dispatch_job(job.id).status == JobStatus.FAILED
    assert campaign_repo.get_campaign(campaign.id).status == CampaignStatus.FAILED
    assert campaign_repo.list_campaign_messages(campaign.id) == []

def test_get_job_must_belong_to_campaign(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id], status=CampaignStatus.DRAFT)
    service = service_factory()
    _, job = service.start_dispatch(campaign.id)

    with pytest.raises(NotFoundError):
        service.get_job(uuid.uuid4(), job.id)
    with pytest.raises(NotFoundError):
        service.get_job(campaign.id, uuid.uuid4())


def test_analytics_computed_on_demand(service_factory, campaign_repo, audience):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id])

    analytics = service_factory().get_analytics(campaign.id)

    assert analytics.total_sent == 0
    assert analytics.delivery_rate == 0.0
    with pytest.raises(NotFoundError):
        service_factory().get_analytics(uuid.uuid4())


def test_activation_stats(service_factory, campaign_repo, convo_repo, audience):
    template = campaign_repo.add_template(make_template())
    campaign = make_campaign(campaign_repo, template, [audience.id])
    contact = convo_repo.add_contact(make_contact("+5511900000003"))
    for visibility in (
        convo_schemas.Visibility.ACTIVE,
        convo_schemas.Visibility.DORMANT,
        convo_schemas.Visibility.DORMANT,
    ):
        convo_repo.create_conversation(
            contact.id, now=NOW, visibility=visibility, created_by_campaign=campaign.id
        )

    stats = service_factory().activation_stats(campaign.id)

    assert stats.total_conversations == 3
    assert stats.activated_conversations == 1
    assert stats.dormant_conversations == 2
    assert stats.activation_rate == 33.33
