import asyncio

import pytest
from sqlalchemy import select

from yueke.core.config import settings
from yueke.models import SubscribeMessageLog, UserSubscribeQuota
from yueke.models.subscribe_message_log import SendStatus
from yueke.services.notification_service import NotificationDispatcher, SendResult, TemplateType

pytestmark = pytest.mark.anyio("asyncio")

TEMPLATE_IDS = {t: f"tmpl-{t.lower()}" for t in TemplateType.ALL}
MESSAGE = {"thing7": {"value": "小明"}, "time8": {"value": "2025-06-03 09:00 - 10:00"}}


class FakeSender:
    def __init__(self, results=None, delay=0.0):
        self.results = list(results or [])
        self.delay = delay
        self.calls = []

    async def send(self, template_id, receiver_openid, message_data, page_path=None):
        self.calls.append((template_id, receiver_openid, message_data, page_path))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return SendResult(True)


async def all_logs(session_factory):
    async with session_factory() as db:
        logs = (await db.execute(select(SubscribeMessageLog).order_by(SubscribeMessageLog.id))).scalars().all()
        await db.commit()
        return logs


async def remaining_quota(session_factory, user_id, template_type):
    async with session_factory() as db:
        value = await db.scalar(
            select(UserSubscribeQuota.remaining_quota).where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
            )
        )
        await db.commit()
        return value


async def dispatch(session_factory, dispatcher, receiver_id, business_id=1,
                   template_type=TemplateType.BOOKING_CONFIRM, **kwargs):
    async with session_factory() as db:
        return await dispatcher.dispatch(
            db, "course_booking", business_id, template_type, receiver_id, MESSAGE,
            "pages/courseDetail/courseDetail?id=1", **kwargs,
        )


@pytest.fixture
async def receiver(seed):
    user_id = await seed.user("教练", openid="openid-coach")
    await seed.quota(user_id, TemplateType.BOOKING_CONFIRM, 5)
    return user_id


async def test_successful_dispatch(session_factory, receiver):
    sender = FakeSender()
    result = await dispatch(session_factory, NotificationDispatcher(sender, TEMPLATE_IDS), receiver)

    assert result.status == SendStatus.SUCCESS
    assert not result.duplicate
    assert sender.calls == [(
        "tmpl-booking_confirm", "openid-coach", MESSAGE, "pages/courseDetail/courseDetail?id=1",
    )]
    [log] = await all_logs(session_factory)
    assert log.send_status == SendStatus.SUCCESS
    assert log.send_time is not None
    assert log.retry_count == 0
    assert await remaining_quota(session_factory, receiver, TemplateType.BOOKING_CONFIRM) == 4


async def test_repeated_dispatch_is_not_resent(session_factory, receiver):
    sender = FakeSender()
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)

    first = await dispatch(session_factory, dispatcher, receiver)
    second = await dispatch(session_factory, dispatcher, receiver)

    assert second.duplicate
    assert second.log_id == first.log_id
    assert second.status == SendStatus.SUCCESS
    assert len(sender.calls) == 1
    assert await remaining_quota(session_factory, receiver, TemplateType.BOOKING_CONFIRM) == 4


async def test_concurrent_dispatch_sends_once(session_factory, receiver):
    sender = FakeSender(delay=0.05)
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)

    results = await asyncio.gather(
        dispatch(session_factory, dispatcher, receiver),
        dispatch(session_factory, dispatcher, receiver),
    )

    assert len(await all_logs(session_factory)) == 1
    assert len(sender.calls) == 1
    assert sorted(r.duplicate for r in results) == [False, True]


async def test_different_recipients_are_independent(session_factory, seed, receiver):
    other = await seed.user("学员", openid="openid-student")
    await seed.quota(other, TemplateType.BOOKING_CONFIRM, 1)
    sender = FakeSender()
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)

    await dispatch(session_factory, dispatcher, receiver)
    await dispatch(session_factory, dispatcher, other)

    assert len(await all_logs(session_factory)) == 2
    assert len(sender.calls) == 2


async def test_exhausted_quota_fails_without_sending(session_factory, seed):
    user_id = await seed.user("学员", openid="openid-student")
    await seed.quota(user_id, TemplateType.BOOKING_CONFIRM, 0)
    sender = FakeSender()

    result = await dispatch(session_factory, NotificationDispatcher(sender, TEMPLATE_IDS), user_id)

    assert result.status == SendStatus.FAILED
    assert result.error_code == "QUOTA_EXHAUSTED"
    assert sender.calls == []
    [log] = await all_logs(session_factory)
    assert log.send_status == SendStatus.FAILED
    assert log.error_code == "QUOTA_EXHAUSTED"
    assert log.retry_count == 1
    assert await remaining_quota(session_factory, user_id, TemplateType.BOOKING_CONFIRM) == 0


async def test_receiver_without_openid(session_factory, seed):
    user_id = await seed.user("未绑定")
    await seed.quota(user_id, TemplateType.BOOKING_CONFIRM, 1)
    sender = FakeSender()

    result = await dispatch(session_factory, NotificationDispatcher(sender, TEMPLATE_IDS), user_id)

    assert result.error_code == "NO_OPENID"
    assert sender.calls == []
    assert await remaining_quota(session_factory, user_id, TemplateType.BOOKING_CONFIRM) == 1


async def test_template_id_falls_back_to_authorized_template(session_factory, receiver):
    sender = FakeSender()
    await dispatch(session_factory, NotificationDispatcher(sender, template_ids={}), receiver)
    assert sender.calls[0][0] == "tmpl"


async def test_timeout_marks_failed_and_keeps_quota_debited(session_factory, receiver):
    sender = FakeSender(delay=1.0)

    result = await dispatch(session_factory, NotificationDispatcher(sender, TEMPLATE_IDS), receiver, timeout=0.05)

    assert result.status == SendStatus.FAILED
    assert result.error_code == "DELIVERY_TIMEOUT"
    [log] = await all_logs(session_factory)
    assert log.retry_count == 1
    assert await remaining_quota(session_factory, receiver, TemplateType.BOOKING_CONFIRM) == 4


async def test_delivery_failure_refunds_quota(session_factory, receiver):
    sender = FakeSender([SendResult(False, "43101", "user refuse to accept the msg")])

    result = await dispatch(session_factory, NotificationDispatcher(sender, TEMPLATE_IDS), receiver)

    assert result.error_code == "43101"
    [log] = await all_logs(session_factory)
    assert log.error_message == "user refuse to accept the msg"
    assert await remaining_quota(session_factory, receiver, TemplateType.BOOKING_CONFIRM) == 5


async def test_sender_exception_is_recorded(session_factory, receiver):
    class BrokenSender(FakeSender):
        async def send(self, *args, **kwargs):
            raise ConnectionError("gateway down")

    result = await dispatch(session_factory, NotificationDispatcher(BrokenSender(), TEMPLATE_IDS), receiver)

    assert result.status == SendStatus.FAILED
    assert result.error_code == "DELIVERY_FAILED"


async def test_retry_resends_failed_message(session_factory, receiver):
    sender = FakeSender([SendResult(False, "-1", "system busy")])
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)
    failed = await dispatch(session_factory, dispatcher, receiver)

    async with session_factory() as db:
        retried = await dispatcher.retry(db, failed.log_id)
    assert retried.status == SendStatus.SUCCESS
    assert len(sender.calls) == 2

    # 成功后不会再发送
    async with session_factory() as db:
        assert await dispatcher.retry(db, failed.log_id) is None
    assert len(sender.calls) == 2
    assert await remaining_quota(session_factory, receiver, TemplateType.BOOKING_CONFIRM) == 4


async def test_retry_is_bounded(session_factory, receiver):
    failures = [SendResult(False, "-1", "system busy") for _ in range(10)]
    sender = FakeSender(failures)
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)
    failed = await dispatch(session_factory, dispatcher, receiver)

    attempts = 0
    async with session_factory() as db:
        while await dispatcher.retry(db, failed.log_id) is not None:
            attempts += 1

    assert attempts == settings.MESSAGE_MAX_RETRY - 1
    assert len(sender.calls) == settings.MESSAGE_MAX_RETRY
    [log] = await all_logs(session_factory)
    assert log.retry_count == settings.MESSAGE_MAX_RETRY


async def test_retry_failed_messages_skips_quota_failures(session_factory, seed, receiver):
    broke = await seed.user("学员", openid="openid-student")
    await seed.quota(broke, TemplateType.BOOKING_CONFIRM, 0)
    sender = FakeSender([SendResult(False, "-1", "system busy")])
    dispatcher = NotificationDispatcher(sender, TEMPLATE_IDS)

    await dispatch(session_factory, dispatcher, receiver)
    await dispatch(session_factory, dispatcher, broke)

    async with session_factory() as db:
        stats = await dispatcher.retry_failed_messages(db)

    assert stats == {"total": 1, "success": 1, "failed": 0}
    logs = await all_logs(session_factory)
    assert [log.send_status for log in logs] == [SendStatus.SUCCESS, SendStatus.FAILED]
