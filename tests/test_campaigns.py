"""
WhatsApp campaign fan-out tests: enqueue on the API side, delivery on the
worker side. The worker uses SessionLocal like it does under Celery.
"""
import threading
import time
from datetime import datetime

import pytest

from app.core.clock import FrozenClock
from app.core.exceptions import (
    CampaignNotFoundError,
    LimitExceededError,
    NoRecipientsError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from app.database import SessionLocal
from app.models.campaign import (
    CampaignStatus,
    MessageSource,
    MessageStatus,
    RecipientStatus,
    WACampaign,
    WAMessageLog,
    WARecipient,
)
from app.services.campaigns import CampaignService, CampaignWorker, WAMessageLogService
from app.services.tenant_limiter import TenantLimiter
from conftest import FakeGateway, make_client, make_group, make_plan, make_tenant

NOW = datetime(2024, 3, 15, 9, 0, 0)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def service(recording_queue, clock):
    return CampaignService(recording_queue, clock=clock)


@pytest.fixture
def isp(db_session, plan):
    return make_tenant(db_session, "wa-isp", plan)


@pytest.fixture
def group(db_session, isp):
    group = make_group(db_session, isp)
    make_client(db_session, isp, "CL00001", name="Ani", phone="628111", group_id=group.id)
    make_client(db_session, isp, "CL00002", name="Budi", phone="628222", group_id=group.id)
    make_client(db_session, isp, "CL00003", name="Citra", phone="  ", group_id=group.id)
    return group


def make_worker(gateway, clock):
    return CampaignWorker(
        gateway,
        TenantLimiter(1),
        session_factory=SessionLocal,
        clock=clock,
        sleep=lambda seconds: None,
    )


def _reload(db, model, id_):
    db.expire_all()
    return db.query(model).filter(model.id == id_).one()


class TestCreateAndEnqueue:
    def test_one_job_per_recipient_with_phone(self, db_session, service, recording_queue, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello!", group.id, created_by="u1")

        assert campaign.status == CampaignStatus.RUNNING
        assert campaign.total == 2
        assert len(recording_queue.jobs) == 2
        assert {job["phone"] for job in recording_queue.jobs} == {"628111", "628222"}
        for job in recording_queue.jobs:
            assert job["tenant_id"] == isp.id
            assert job["campaign_id"] == campaign.id
            assert job["text"] == "Hello!"
            assert 0.3 <= job["countdown"] < 0.7

        recipients = db_session.query(WARecipient).filter(WARecipient.campaign_id == campaign.id).all()
        assert {r.status for r in recipients} == {RecipientStatus.PENDING}

    @pytest.mark.parametrize("name,message,group_id", [
        ("", "Hello", "g"),
        ("Promo", "   ", "g"),
        ("Promo", "Hello", ""),
    ])
    def test_required_fields(self, db_session, service, isp, name, message, group_id):
        with pytest.raises(ValidationError):
            service.create_and_enqueue(db_session, isp.id, name, message, group_id)

    def test_unknown_group(self, db_session, service, isp):
        with pytest.raises(NotFoundError):
            service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", "missing-group")

    def test_group_of_other_tenant(self, db_session, service, plan, group):
        other = make_tenant(db_session, "other-isp", plan)
        with pytest.raises(NotFoundError):
            service.create_and_enqueue(db_session, other.id, "Promo", "Hello", group.id)

    def test_no_recipients(self, db_session, service, recording_queue, isp):
        empty = make_group(db_session, isp, "Empty")
        make_client(db_session, isp, "CL00009", phone="", group_id=empty.id)

        with pytest.raises(NoRecipientsError) as exc:
            service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", empty.id)
        assert exc.value.status_code == 400
        assert recording_queue.jobs == []
        assert db_session.query(WACampaign).count() == 0

    def test_monthly_quota(self, db_session, service, recording_queue):
        small = make_plan(db_session, "small", limits={"wa_quota_monthly": 2})
        isp = make_tenant(db_session, "small-isp", small)
        group = make_group(db_session, isp)
        for i in range(3):
            make_client(db_session, isp, f"CL0000{i}", phone=f"62800{i}", group_id=group.id)

        with pytest.raises(LimitExceededError) as exc:
            service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        assert exc.value.payload["limit"] == "wa_quota_monthly"
        assert recording_queue.jobs == []

    def test_get_and_list_are_tenant_scoped(self, db_session, service, plan, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        other = make_tenant(db_session, "other-isp", plan)

        assert [c.id for c in service.list_campaigns(db_session, isp.id)] == [campaign.id]
        assert service.list_campaigns(db_session, other.id) == []
        with pytest.raises(CampaignNotFoundError):
            service.get_campaign(db_session, other.id, campaign.id)

        detail, recipients = service.get_detail(db_session, isp.id, campaign.id)
        assert detail.id == campaign.id
        assert len(recipients) == 2


class TestCampaignWorker:
    def test_all_sent_completes_campaign(self, db_session, service, recording_queue, clock, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        gateway = FakeGateway()
        worker = make_worker(gateway, clock)

        for job in recording_queue.jobs:
            assert worker.handle_send(job) is None

        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.COMPLETED
        assert campaign.sent == 2
        assert campaign.failed == 0
        assert campaign.completed_at == NOW
        assert len(gateway.sent) == 2

        logs = db_session.query(WAMessageLog).filter(WAMessageLog.campaign_id == campaign.id).all()
        assert {log.status for log in logs} == {MessageStatus.SENT}
        assert {log.source for log in logs} == {MessageSource.CAMPAIGN}

    def test_one_failure_fails_campaign(self, db_session, service, recording_queue, clock, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        worker = make_worker(FakeGateway(fail_for={"628222"}), clock)

        for job in recording_queue.jobs:
            worker.handle_send(job)

        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.FAILED
        assert campaign.sent == 1
        assert campaign.failed == 1
        failed = db_session.query(WARecipient).filter(WARecipient.status == RecipientStatus.FAILED).one()
        assert failed.phone == "628222"
        assert failed.error == "number not on whatsapp"

    def test_campaign_stays_running_until_last_recipient(self, db_session, service, recording_queue, clock,
                                                         isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        make_worker(FakeGateway(), clock).handle_send(recording_queue.jobs[0])

        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.RUNNING
        assert campaign.sent == 1

    def test_duplicate_delivery_is_a_no_op(self, db_session, service, recording_queue, clock, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        gateway = FakeGateway()
        worker = make_worker(gateway, clock)

        job = recording_queue.jobs[0]
        worker.handle_send(job)
        worker.handle_send(job)

        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.sent == 1
        assert len(gateway.sent) == 1
        assert db_session.query(WAMessageLog).count() == 1

    def test_gateway_down_marks_failed_without_raising(self, db_session, service, recording_queue, clock,
                                                       isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        worker = make_worker(FakeGateway(down=True), clock)

        for job in recording_queue.jobs:
            worker.handle_send(job)

        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.FAILED
        assert campaign.failed == 2
        errors = {r.error for r in db_session.query(WARecipient).all()}
        assert errors == {"WA gateway unreachable"}

    def test_retry_failed(self, db_session, service, recording_queue, clock, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        for job in recording_queue.jobs:
            make_worker(FakeGateway(fail_for={"628222"}), clock).handle_send(job)
        recording_queue.jobs.clear()

        assert service.retry_failed(db_session, isp.id, campaign.id) == 1
        assert [job["phone"] for job in recording_queue.jobs] == ["628222"]
        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.RUNNING
        assert campaign.failed == 0
        assert campaign.sent == 1

        make_worker(FakeGateway(), clock).handle_send(recording_queue.jobs[0])
        campaign = _reload(db_session, WACampaign, campaign.id)
        assert campaign.status == CampaignStatus.COMPLETED
        assert campaign.sent == 2

    def test_retry_with_nothing_failed(self, db_session, service, isp, group):
        campaign = service.create_and_enqueue(db_session, isp.id, "Promo", "Hello", group.id)
        assert service.retry_failed(db_session, isp.id, campaign.id) == 0


class TestSingleSend:
    def test_sent_is_logged(self, db_session, clock, isp):
        logs = WAMessageLogService(clock)
        log = logs.send_single(db_session, FakeGateway(), isp.id, " 628111 ", "Hi")
        assert log.status == MessageStatus.SENT
        assert log.to_phone == "628111"
        assert log.source == MessageSource.SINGLE
        assert log.gateway_message_id == "msg-1"

    def test_not_ok_is_logged_as_failed(self, db_session, clock, isp):
        logs = WAMessageLogService(clock)
        log = logs.send_single(db_session, FakeGateway(fail_for={"628111"}), isp.id, "628111", "Hi")
        assert log.status == MessageStatus.FAILED

    def test_gateway_down_is_logged_then_raised(self, db_session, clock, isp):
        logs = WAMessageLogService(clock)
        with pytest.raises(UpstreamError):
            logs.send_single(db_session, FakeGateway(down=True), isp.id, "628111", "Hi")
        log = db_session.query(WAMessageLog).one()
        assert log.status == MessageStatus.FAILED

    def test_requires_phone_and_text(self, db_session, clock, isp):
        logs = WAMessageLogService(clock)
        with pytest.raises(ValidationError):
            logs.send_single(db_session, FakeGateway(), isp.id, "", "Hi")
        with pytest.raises(ValidationError):
            logs.send_single(db_session, FakeGateway(), isp.id, "628111", "")


class TestTenantLimiter:
    def test_one_slot_per_tenant(self):
        limiter = TenantLimiter(1)
        assert limiter.acquire("tenant-a")

        assert limiter.acquire("tenant-a", timeout=0.1) is False
        assert limiter.acquire("tenant-b", timeout=0.1) is True

        limiter.release("tenant-a")
        assert limiter.acquire("tenant-a", timeout=0.1) is True

    def test_slot_released_on_error(self):
        limiter = TenantLimiter(1)
        with pytest.raises(RuntimeError):
            with limiter.slot("tenant-a"):
                raise RuntimeError("send blew up")
        assert limiter.acquire("tenant-a", timeout=0.1)

    def test_release_without_acquire(self):
        with pytest.raises(ValueError):
            TenantLimiter(1).release("tenant-a")

    def test_needs_at_least_one_slot(self):
        with pytest.raises(ValueError):
            TenantLimiter(0)

    @pytest.mark.parametrize("max_concurrent", [1, 2])
    def test_in_flight_sends_capped(self, max_concurrent):
        limiter = TenantLimiter(max_concurrent)
        in_flight = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def send():
            with limiter.slot("tenant-a"):
                with lock:
                    in_flight["now"] += 1
                    in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
                time.sleep(0.02)
                with lock:
                    in_flight["now"] -= 1

        threads = [threading.Thread(target=send) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert in_flight["peak"] == max_concurrent
