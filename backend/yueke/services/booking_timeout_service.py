"""
预约超时管理服务
- 定期扫描开课时间已过但仍未确认的预约
- 通过约课服务自动取消，释放时段并退还课时
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_
from datetime import datetime
from typing import Optional
import logging

from yueke.core.datetime_utils import get_now_naive
from yueke.core.exceptions import BookingError
from yueke.models.course_booking import CourseBooking, BookingStatus
from yueke.services.booking_service import BookingCoordinator

logger = logging.getLogger(__name__)


class BookingTimeoutService:
    """待确认预约超时处理"""

    CANCEL_REASON = "超时未确认自动取消"

    @classmethod
    async def cancel_expired_pending_bookings(cls, db: AsyncSession, coordinator: BookingCoordinator,
                                              now: Optional[datetime] = None) -> int:
        """
        扫描并自动取消开课时间已过仍未确认的预约

        返回: 取消的预约数
        """
        now = now or get_now_naive()
        result = await db.execute(
            select(CourseBooking.id).where(
                and_(
                    CourseBooking.status == BookingStatus.PENDING,
                    or_(
                        CourseBooking.course_date < now.date(),
                        and_(
                            CourseBooking.course_date == now.date(),
                            CourseBooking.start_time <= now.time(),
                        ),
                    ),
                )
            ).order_by(CourseBooking.id)
        )
        booking_ids = list(result.scalars().all())
        await db.commit()

        processed_count = 0
        for booking_id in booking_ids:
            try:
                await coordinator.cancel(db, booking_id, cancelled_by=None, reason=cls.CANCEL_REASON)
                processed_count += 1
            except BookingError as e:
                # 扫描之后已被确认或取消
                logger.info(f"超时预约 {booking_id} 无需取消: {e.msg}")

        if processed_count > 0:
            logger.info(f"超时预约扫描完成: 取消 {processed_count} 个预约")
        return processed_count
