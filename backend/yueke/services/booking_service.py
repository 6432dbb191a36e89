"""
约课服务
- 校验时段是否开放、容量是否已满、学员时间是否冲突
- 扣减课时并创建预约（按教练设置自动确认或待确认）
- 确认 / 取消 / 重新开放预约，取消时释放时段并退还课时
- 事务提交后通知预约事件监听者（发送订阅消息等）

加锁顺序：师生关系 -> 学员 -> 预约 -> 时段占用。
"""
import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from datetime import date, time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.config import settings
from yueke.core.datetime_utils import get_now_naive
from yueke.core.exceptions import (
    BookingClosed, BookingError, BookingNotFound, InvalidTransition, RelationNotFound,
    SlotFull, SlotNotOffered, StoreUnavailable, StudentTimeConflict, STORE_ERRORS, is_retryable_db_error,
)
from yueke.models.course_booking import BookingStatus, CourseBooking, OCCUPYING_STATUSES
from yueke.models.slot_occupancy import SlotOccupancy
from yueke.models.time_template import TimeTemplate
from yueke.models.user import User
from yueke.services.availability_service import ResolvedSlot, Template, find_offered_slot, resolve_slots, slot_key
from yueke.services.quota_service import QuotaLedger
from yueke.schemas.time_template import template_from_row

logger = logging.getLogger(__name__)


# 预约状态流转表，REOPENED 为终态（时段重新开放后由新预约占用）
ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: {BookingStatus.REOPENED},
    BookingStatus.REOPENED: set(),
}


class BookingEventType(enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REOPENED = "reopened"


@dataclass(frozen=True)
class BookingEvent:
    """预约事件（事务提交后发出），携带预约快照"""
    type: BookingEventType
    booking_id: int
    status: BookingStatus
    relation_id: int
    student_id: int
    coach_id: int
    category_id: int
    course_date: date
    start_time: time
    end_time: time
    created_by: Optional[int] = None
    actor_id: Optional[int] = None
    cancel_reason: Optional[str] = None

    @classmethod
    def of(cls, event_type: BookingEventType, booking: CourseBooking, actor_id: Optional[int] = None) -> "BookingEvent":
        return cls(
            type=event_type,
            booking_id=booking.id,
            status=booking.status,
            relation_id=booking.relation_id,
            student_id=booking.student_id,
            coach_id=booking.coach_id,
            category_id=booking.category_id,
            course_date=booking.course_date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            created_by=booking.created_by,
            actor_id=actor_id,
            cancel_reason=booking.cancel_reason,
        )


BookingListener = Callable[[BookingEvent], Awaitable[None]]


def check_transition(booking: CourseBooking, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(booking.status, set()):
        raise InvalidTransition(
            f"预约状态 {booking.status.value} 不能变更为 {target.value}",
            booking_id=booking.id,
        )


def _overlaps(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    return start_a < end_b and start_b < end_a


class BookingCoordinator:
    """预约状态机。每个操作一个事务：成功提交，失败整体回滚。"""

    def __init__(self, listeners: Optional[List[BookingListener]] = None):
        self._listeners: List[BookingListener] = list(listeners or [])

    def add_listener(self, listener: BookingListener) -> None:
        self._listeners.append(listener)

    # ========== 查询 ========== #
    @staticmethod
    async def load_active_template(db: AsyncSession, coach_id: int) -> Optional[Template]:
        result = await db.execute(
            select(TimeTemplate)
            .where(TimeTemplate.coach_id == coach_id, TimeTemplate.is_active == True)  # noqa: E712
            .order_by(TimeTemplate.updated_at.desc(), TimeTemplate.id.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return template_from_row(row) if row else None

    async def get_available_slots(self, db: AsyncSession, coach_id: int, date_from: date, date_to: date,
                                  today: Optional[date] = None, include_full: bool = False) -> List[ResolvedSlot]:
        """查询教练在日期区间内的可约时段"""
        try:
            template = await self.load_active_template(db, coach_id)
            if template is None:
                await db.commit()
                return []
            result = await db.execute(
                select(CourseBooking).where(
                    CourseBooking.coach_id == coach_id,
                    CourseBooking.course_date >= date_from,
                    CourseBooking.course_date <= date_to,
                    CourseBooking.status.in_(OCCUPYING_STATUSES),
                )
            )
            bookings = result.scalars().all()
            await db.commit()
        except STORE_ERRORS as e:
            await db.rollback()
            logger.error(f"查询可约时段失败: {str(e)}")
            raise StoreUnavailable(str(e)) from e
        return list(resolve_slots(template, date_from, date_to, bookings, today=today, include_full=include_full))

    # ========== 约课 ========== #
    async def create_booking(
        self,
        db: AsyncSession,
        relation_id: int,
        category_id: int,
        course_date: date,
        start_time: time,
        end_time: time,
        *,
        created_by: Optional[int] = None,
        student_remark: Optional[str] = None,
        coach_remark: Optional[str] = None,
        today: Optional[date] = None,
    ) -> CourseBooking:
        """
        创建预约

        逻辑:
        1. 锁定师生关系，校验关系有效、预约开关开启
        2. 校验教练生效模板提供该时段
        3. 锁定学员，校验学员当天没有时间重叠的预约
        4. 锁定时段占用行，已满抛 SlotFull，否则占用数 +1
        5. 扣减该课程类别 1 课时
        6. 按 auto_confirm_by_coach 决定待确认或已确认

        事务遇到死锁时整体回滚并重试，最多 BOOKING_MAX_ATTEMPTS 次。
        """
        attempt = 1
        while True:
            try:
                booking = await self._insert_booking(
                    db, relation_id, category_id, course_date, start_time, end_time,
                    created_by=created_by, student_remark=student_remark, coach_remark=coach_remark, today=today,
                )
                await db.commit()
                break
            except Exception as e:
                if is_retryable_db_error(e) and attempt < settings.BOOKING_MAX_ATTEMPTS:
                    await db.rollback()
                    delay = 0.05 * (2 ** (attempt - 1)) + random.uniform(0, 0.05)
                    logger.warning(f"约课事务冲突，{delay:.2f}秒后重试: relation_id={relation_id}, 第{attempt}次, {str(e)}")
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                await self._abort(db, "约课", f"relation_id={relation_id}", e)
                raise

        logger.info(f"约课成功: booking_id={booking.id}, slot={booking.slot_key}, 状态={booking.status.value}")
        await self._emit(BookingEvent.of(BookingEventType.CREATED, booking, created_by))
        return booking

    async def _insert_booking(self, db: AsyncSession, relation_id: int, category_id: int, course_date: date,
                              start_time: time, end_time: time, *, created_by: Optional[int],
                              student_remark: Optional[str], coach_remark: Optional[str],
                              today: Optional[date]) -> CourseBooking:
        relation = await QuotaLedger.lock_relation(db, relation_id)
        if relation is None or relation.relation_status != 1:
            raise RelationNotFound(relation_id=relation_id)
        if relation.booking_status == 0:
            raise BookingClosed(relation_id=relation_id)

        template = await self.load_active_template(db, relation.coach_id)
        if template is None or find_offered_slot(template, course_date, start_time, end_time, today=today) is None:
            raise SlotNotOffered(coach_id=relation.coach_id)

        # 学员行锁：冲突检查覆盖该学员的所有师生关系
        await self._lock_student(db, relation.student_id)
        await self._check_student_conflict(db, relation.student_id, course_date, start_time, end_time)

        key = slot_key(template, course_date, start_time, end_time)
        occupancy = await self._lock_occupancy(db, relation.coach_id, key)
        if occupancy.booked_count >= template.max_advance_nums:
            raise SlotFull(slot_key=key)
        occupancy.booked_count += 1

        QuotaLedger.debit_lesson(relation, category_id, on_date=course_date)

        now = get_now_naive()
        auto_confirm = bool(relation.auto_confirm_by_coach)
        booking = CourseBooking(
            relation_id=relation.id,
            student_id=relation.student_id,
            coach_id=relation.coach_id,
            category_id=category_id,
            course_date=course_date,
            start_time=start_time,
            end_time=end_time,
            slot_key=key,
            status=BookingStatus.CONFIRMED if auto_confirm else BookingStatus.PENDING,
            created_by=created_by,
            student_remark=student_remark,
            coach_remark=coach_remark,
            confirmed_at=now if auto_confirm else None,
        )
        relation.last_course_time = now
        db.add(booking)
        return booking

    async def confirm(self, db: AsyncSession, booking_id: int, *, confirmed_by: Optional[int] = None) -> CourseBooking:
        """教练确认预约：仅 PENDING -> CONFIRMED"""
        try:
            booking = await self._lock_booking(db, booking_id)
            check_transition(booking, BookingStatus.CONFIRMED)
            booking.status = BookingStatus.CONFIRMED
            booking.confirmed_at = get_now_naive()
            await db.commit()
        except Exception as e:
            await self._abort(db, "确认预约", f"booking_id={booking_id}", e)
            raise

        logger.info(f"预约已确认: booking_id={booking_id}")
        await self._emit(BookingEvent.of(BookingEventType.CONFIRMED, booking, confirmed_by))
        return booking

    async def cancel(self, db: AsyncSession, booking_id: int, *, cancelled_by: Optional[int] = None,
                     reason: Optional[str] = None) -> CourseBooking:
        """取消预约：PENDING/CONFIRMED -> CANCELLED，同一事务内释放时段并退还课时"""
        try:
            relation_id = await db.scalar(select(CourseBooking.relation_id).where(CourseBooking.id == booking_id))
            if relation_id is None:
                raise BookingNotFound(booking_id=booking_id)
            relation = await QuotaLedger.lock_relation(db, relation_id)
            booking = await self._lock_booking(db, booking_id)
            check_transition(booking, BookingStatus.CANCELLED)

            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = get_now_naive()
            booking.cancelled_by = cancelled_by
            booking.cancel_reason = reason

            await self._release_occupancy(db, booking)
            if relation is not None:
                QuotaLedger.credit_lesson(relation, booking.category_id)
            else:
                logger.warning(f"取消预约时未找到师生关系，课时未退还: booking_id={booking_id}")
            await db.commit()
        except Exception as e:
            await self._abort(db, "取消预约", f"booking_id={booking_id}", e)
            raise

        logger.info(f"预约已取消: booking_id={booking_id}, 取消人={cancelled_by}, 原因={reason}")
        await self._emit(BookingEvent.of(BookingEventType.CANCELLED, booking, cancelled_by))
        return booking

    async def reopen(self, db: AsyncSession, booking_id: int) -> CourseBooking:
        """重新开放已取消的时段：仅 CANCELLED -> REOPENED，不扣课时、不占用容量"""
        try:
            booking = await self._lock_booking(db, booking_id)
            check_transition(booking, BookingStatus.REOPENED)
            booking.status = BookingStatus.REOPENED
            booking.reopened_at = get_now_naive()
            await db.commit()
        except Exception as e:
            await self._abort(db, "重新开放预约", f"booking_id={booking_id}", e)
            raise

        logger.info(f"预约时段已重新开放: booking_id={booking_id}")
        await self._emit(BookingEvent.of(BookingEventType.REOPENED, booking))
        return booking

    # ========== 内部方法 ========== #
    async def _abort(self, db: AsyncSession, action: str, target: str, exc: Exception) -> None:
        """回滚事务；业务异常原样抛出，数据库不可用转换为 StoreUnavailable"""
        await db.rollback()
        if isinstance(exc, BookingError):
            logger.info(f"{action}失败: {target}, {exc.detail}")
        elif isinstance(exc, STORE_ERRORS):
            logger.error(f"{action}失败（数据库不可用）: {str(exc)}")
            raise StoreUnavailable(str(exc)) from exc

    async def _lock_booking(self, db: AsyncSession, booking_id: int) -> CourseBooking:
        result = await db.execute(
            select(CourseBooking)
            .where(CourseBooking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFound(booking_id=booking_id)
        return booking

    async def _check_student_conflict(self, db: AsyncSession, student_id: int, course_date: date,
                                      start: time, end: time) -> None:
        result = await db.execute(
            select(CourseBooking).where(
                CourseBooking.student_id == student_id,
                CourseBooking.course_date == course_date,
                CourseBooking.status.in_(OCCUPYING_STATUSES),
            )
        )
        for other in result.scalars():
            if _overlaps(start, end, other.start_time, other.end_time):
                raise StudentTimeConflict(booking_id=other.id)

    async def _lock_student(self, db: AsyncSession, student_id: int) -> None:
        await db.execute(select(User.user_id).where(User.user_id == student_id).with_for_update())

    async def _lock_occupancy(self, db: AsyncSession, coach_id: int, key: str) -> SlotOccupancy:
        """锁定时段占用行，不存在时先按现有预约数插入再加锁

        不对不存在的行执行 SELECT ... FOR UPDATE。
        """
        exists = await db.scalar(
            select(SlotOccupancy.id).where(SlotOccupancy.coach_id == coach_id, SlotOccupancy.slot_key == key)
        )
        if exists is None:
            booked = await db.scalar(
                select(func.count()).select_from(CourseBooking).where(
                    CourseBooking.coach_id == coach_id,
                    CourseBooking.slot_key == key,
                    CourseBooking.status.in_(OCCUPYING_STATUSES),
                )
            )
            try:
                async with db.begin_nested():
                    db.add(SlotOccupancy(coach_id=coach_id, slot_key=key, booked_count=booked or 0))
            except IntegrityError:
                logger.debug(f"时段占用行已由并发请求创建: coach_id={coach_id}, slot={key}")

        return (await db.execute(
            select(SlotOccupancy)
            .where(SlotOccupancy.coach_id == coach_id, SlotOccupancy.slot_key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one()

    async def _release_occupancy(self, db: AsyncSession, booking: CourseBooking) -> None:
        await db.execute(
            update(SlotOccupancy)
            .where(
                SlotOccupancy.coach_id == booking.coach_id,
                SlotOccupancy.slot_key == booking.slot_key,
                SlotOccupancy.booked_count > 0,
            )
            .values(booked_count=SlotOccupancy.booked_count - 1)
            .execution_options(synchronize_session=False)
        )

    async def _emit(self, event: BookingEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"预约事件处理失败: type={event.type.value}, booking_id={event.booking_id}, {str(e)}", exc_info=True)
