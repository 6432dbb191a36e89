"""
预约消息通知
- 监听预约事件，决定给谁发哪个模板的订阅消息
- 组装订阅消息内容（thing 类字段最多 20 个字符）

事件在约课事务提交后才到达，这里使用独立的数据库会话。
"""
import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.datetime_utils import format_hhmm
from yueke.models.course_booking import BookingStatus, CourseBooking
from yueke.models.student_coach_relation import StudentCoachRelation
from yueke.models.user import User
from yueke.schemas.lessons import parse_course_categories
from yueke.services.booking_service import BookingEvent, BookingEventType
from yueke.services.notification_service import DispatchResult, NotificationDispatcher, TemplateType

logger = logging.getLogger(__name__)

BUSINESS_TYPE = "course_booking"

THING_MAX_LENGTH = 20


def course_detail_page(booking_id: int) -> str:
    return f"pages/courseDetail/courseDetail?id={booking_id}"


def format_time_slot(course_date: date, start: time, end: time) -> str:
    """例如：2025-11-10 19:00 - 20:00"""
    return f"{course_date.isoformat()} {format_hhmm(start)} - {format_hhmm(end)}"


def thing(value: Optional[str], default: str = "无") -> Dict[str, str]:
    text = (value or "").strip() or default
    return {"value": text[:THING_MAX_LENGTH]}


@dataclass
class BookingContext:
    """组装消息所需的预约上下文"""
    booking: CourseBooking
    student: Optional[User]
    coach: Optional[User]
    relation: Optional[StudentCoachRelation]

    @property
    def student_name(self) -> str:
        if self.relation and self.relation.student_name:
            return self.relation.student_name
        return (self.student.nickname if self.student else None) or "学员"

    @property
    def coach_name(self) -> str:
        return (self.coach.nickname if self.coach else None) or "教练"

    @property
    def category_name(self) -> str:
        categories = parse_course_categories(self.coach.course_categories if self.coach else None)
        category = categories.get(self.booking.category_id)
        return category.name if category else "课程"

    @property
    def time_slot(self) -> str:
        return format_time_slot(self.booking.course_date, self.booking.start_time, self.booking.end_time)

    def name_of(self, user_id: Optional[int]) -> str:
        return self.student_name if user_id == self.booking.student_id else self.coach_name

    def other_party(self, user_id: Optional[int]) -> int:
        return self.booking.coach_id if user_id == self.booking.student_id else self.booking.student_id


async def load_booking_context(db: AsyncSession, booking_id: int) -> Optional[BookingContext]:
    booking = await db.get(CourseBooking, booking_id)
    if booking is None:
        return None
    users = {
        u.user_id: u for u in (await db.execute(
            select(User).where(User.user_id.in_([booking.student_id, booking.coach_id]))
        )).scalars()
    }
    relation = await db.get(StudentCoachRelation, booking.relation_id)
    return BookingContext(booking, users.get(booking.student_id), users.get(booking.coach_id), relation)


def confirm_message(ctx: BookingContext) -> Dict[str, Any]:
    """预约确认提醒：预约人、上课时间、课程、状态"""
    return {
        "thing7": thing(ctx.name_of(ctx.booking.created_by)),
        "time8": {"value": ctx.time_slot},
        "thing9": thing(ctx.category_name),
        "thing13": {"value": "待确认"},
    }


def success_message(ctx: BookingContext, receiver_id: int) -> Dict[str, Any]:
    """预约成功通知：课程、上课时间、对方、备注"""
    booking = ctx.booking
    remark = booking.student_remark if receiver_id == booking.student_id else booking.coach_remark
    return {
        "thing41": thing(ctx.category_name),
        "time43": {"value": ctx.time_slot},
        "thing44": thing(ctx.name_of(ctx.other_party(receiver_id))),
        "thing4": thing(remark),
    }


def cancel_message(ctx: BookingContext) -> Dict[str, Any]:
    return {
        "thing1": thing(ctx.category_name),
        "time2": {"value": ctx.time_slot},
        "thing3": thing(ctx.booking.cancel_reason, "预约已取消"),
    }


def reminder_message(ctx: BookingContext, receiver_id: int) -> Dict[str, Any]:
    return {
        "thing1": thing(ctx.category_name),
        "time2": {"value": ctx.time_slot},
        "thing3": thing(f"与{ctx.name_of(ctx.other_party(receiver_id))}的课程即将开始"),
    }


class BookingNoticeService:
    """预约事件 -> 订阅消息"""

    def __init__(self, dispatcher: NotificationDispatcher, session_factory: Callable[[], AsyncSession]):
        self.dispatcher = dispatcher
        self.session_factory = session_factory

    async def __call__(self, event: BookingEvent) -> List[DispatchResult]:
        return await self.handle(event)

    async def handle(self, event: BookingEvent) -> List[DispatchResult]:
        async with self.session_factory() as db:
            ctx = await load_booking_context(db, event.booking_id)
            await db.commit()
            if ctx is None:
                logger.warning(f"预约不存在，跳过消息通知: booking_id={event.booking_id}")
                return []

            results = []
            for template_type, receiver_id, data in self.plan(event, ctx):
                result = await self.dispatcher.dispatch(
                    db,
                    BUSINESS_TYPE,
                    event.booking_id,
                    template_type,
                    receiver_id,
                    data,
                    course_detail_page(event.booking_id),
                )
                results.append(result)
            return results

    def plan(self, event: BookingEvent, ctx: BookingContext) -> List[tuple]:
        """返回 [(模板类型, 接收人, 消息内容)]"""
        booking = ctx.booking
        if event.type == BookingEventType.CREATED:
            if event.status == BookingStatus.CONFIRMED:
                # 自动确认
                return [(TemplateType.BOOKING_SUCCESS, booking.student_id, success_message(ctx, booking.student_id))]
            # 学员预约通知教练，教练代约通知学员
            return [(TemplateType.BOOKING_CONFIRM, ctx.other_party(event.created_by), confirm_message(ctx))]

        if event.type == BookingEventType.CONFIRMED:
            receiver_id = event.created_by if event.created_by in (booking.student_id, booking.coach_id) else booking.student_id
            return [(TemplateType.BOOKING_SUCCESS, receiver_id, success_message(ctx, receiver_id))]

        if event.type == BookingEventType.CANCELLED:
            if event.actor_id in (booking.student_id, booking.coach_id):
                receivers = [ctx.other_party(event.actor_id)]
            else:
                # 系统取消，双方都通知
                receivers = [booking.student_id, booking.coach_id]
            return [(TemplateType.BOOKING_CANCEL, r, cancel_message(ctx)) for r in receivers]

        # 重新开放时段不发消息
        logger.info(f"预约事件无需通知: type={event.type.value}, booking_id={event.booking_id}")
        return []
