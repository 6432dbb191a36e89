"""
上课提醒服务
- 对 2~24 小时后开课的待确认/已确认预约，给学员和教练各发一条上课提醒
- 消息日志唯一键保证每个预约每人只提醒一次
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.datetime_utils import combine, get_now_naive
from yueke.models.course_booking import CourseBooking, OCCUPYING_STATUSES
from yueke.models.subscribe_message_log import SendStatus
from yueke.services.booking_notice_service import (
    BUSINESS_TYPE, course_detail_page, load_booking_context, reminder_message,
)
from yueke.services.notification_service import NotificationDispatcher, TemplateType

logger = logging.getLogger(__name__)

REMINDER_MIN_HOURS = 2
REMINDER_MAX_HOURS = 24


async def send_upcoming_reminders(db: AsyncSession, dispatcher: NotificationDispatcher,
                                  now: Optional[datetime] = None) -> Dict[str, int]:
    """发送上课提醒，返回 {total, success, failed, skipped}"""
    now = now or get_now_naive()
    window_start = now + timedelta(hours=REMINDER_MIN_HOURS)
    window_end = now + timedelta(hours=REMINDER_MAX_HOURS)

    result = await db.execute(
        select(CourseBooking).where(
            CourseBooking.status.in_(OCCUPYING_STATUSES),
            CourseBooking.course_date >= window_start.date(),
            CourseBooking.course_date <= window_end.date(),
        ).order_by(CourseBooking.course_date, CourseBooking.start_time)
    )
    booking_ids = [
        b.id for b in result.scalars().all()
        if window_start < combine(b.course_date, b.start_time) < window_end
    ]
    await db.commit()

    # 先组装全部消息：dispatch 遇到重复日志会回滚会话，之后不能再读取 ORM 对象
    targets = []
    for booking_id in booking_ids:
        ctx = await load_booking_context(db, booking_id)
        if ctx is None:
            continue
        for receiver_id in (ctx.booking.student_id, ctx.booking.coach_id):
            targets.append((booking_id, receiver_id, reminder_message(ctx, receiver_id)))
    await db.commit()

    stats = {"total": 0, "success": 0, "failed": 0, "skipped": 0}
    for booking_id, receiver_id, message in targets:
        outcome = await dispatcher.dispatch(
            db,
            BUSINESS_TYPE,
            booking_id,
            TemplateType.BOOKING_REMINDER,
            receiver_id,
            message,
            course_detail_page(booking_id),
        )
        if outcome.duplicate:
            stats["skipped"] += 1
            continue
        stats["total"] += 1
        if outcome.status == SendStatus.SUCCESS:
            stats["success"] += 1
        else:
            stats["failed"] += 1

    logger.info(f"上课提醒: 总计{stats['total']}, 成功{stats['success']}, 失败{stats['failed']}, 跳过{stats['skipped']}")
    return stats
