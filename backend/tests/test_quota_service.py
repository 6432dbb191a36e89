import pytest
from sqlalchemy import select

from yueke.core.exceptions import QuotaExhausted
from yueke.models import UserSubscribeQuota
from yueke.services.quota_service import QuotaLedger

pytestmark = pytest.mark.anyio("asyncio")


async def load_quota(session_factory, user_id, template_type):
    async with session_factory() as db:
        quota = (await db.execute(
            select(UserSubscribeQuota).where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
            )
        )).scalar_one_or_none()
        await db.commit()
        return quota


async def test_authorize_creates_then_increments(session_factory):
    async with session_factory() as db:
        await QuotaLedger.authorize(db, 1, "BOOKING_CONFIRM", template_id="tmpl-confirm")
    async with session_factory() as db:
        await QuotaLedger.authorize(db, 1, "BOOKING_CONFIRM", delta=2)

    quota = await load_quota(session_factory, 1, "BOOKING_CONFIRM")
    assert quota.remaining_quota == 3
    assert quota.total_quota == 3
    assert quota.template_id == "tmpl-confirm"
    assert quota.last_authorized_at is not None


async def test_debit_never_goes_negative(session_factory, seed):
    await seed.quota(1, "BOOKING_SUCCESS", 1)

    async with session_factory() as db:
        await QuotaLedger.debit_message_quota(db, 1, "BOOKING_SUCCESS")
        await db.commit()
        with pytest.raises(QuotaExhausted):
            await QuotaLedger.debit_message_quota(db, 1, "BOOKING_SUCCESS")
        await db.rollback()

    quota = await load_quota(session_factory, 1, "BOOKING_SUCCESS")
    assert quota.remaining_quota == 0
    assert quota.total_quota == 1
    assert quota.last_sent_at is not None


async def test_debit_without_quota_row(session_factory):
    async with session_factory() as db:
        with pytest.raises(QuotaExhausted):
            await QuotaLedger.debit_message_quota(db, 42, "BOOKING_CONFIRM")
        await db.rollback()


async def test_refund_keeps_total(session_factory, seed):
    await seed.quota(1, "BOOKING_CANCEL", 2)
    async with session_factory() as db:
        await QuotaLedger.debit_message_quota(db, 1, "BOOKING_CANCEL")
        await QuotaLedger.refund_message_quota(db, 1, "BOOKING_CANCEL")
        await db.commit()

    quota = await load_quota(session_factory, 1, "BOOKING_CANCEL")
    assert quota.remaining_quota == 2
    assert quota.total_quota == 2


async def test_reset_and_list(session_factory, seed):
    await seed.quota(1, "BOOKING_CONFIRM", 3)
    await seed.quota(1, "BOOKING_SUCCESS", 1)
    async with session_factory() as db:
        await QuotaLedger.reset_message_quota(db, 1, "BOOKING_CONFIRM")
        quotas = await QuotaLedger.get_user_quotas(db, 1)

    assert [(q.template_type, q.remaining_quota, q.total_quota) for q in quotas] == [
        ("BOOKING_CONFIRM", 0, 3),
        ("BOOKING_SUCCESS", 1, 1),
    ]


async def test_authorize_rejects_non_positive_delta(session_factory):
    async with session_factory() as db:
        with pytest.raises(ValueError):
            await QuotaLedger.authorize(db, 1, "BOOKING_CONFIRM", delta=0)
