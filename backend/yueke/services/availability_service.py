"""
可约时段计算服务
- 根据教练时间模板生成具体的可约时段
- 按星期开关、最多提前天数过滤日期
- 按同一时段最多预约数计算剩余容量

该模块不访问数据库，调用方负责传入模板与已有预约。
"""
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Iterable, Iterator, Optional, Tuple, Union

from yueke.core.datetime_utils import format_hhmm, get_today
from yueke.models.course_booking import OCCUPYING_STATUSES
from yueke.schemas.time_template import FreeTemplate, FullTemplate, TimeRange, WeeklyTemplate

Template = Union[FullTemplate, WeeklyTemplate, FreeTemplate]


@dataclass(frozen=True)
class ResolvedSlot:
    date: date
    start_time: time
    end_time: time
    # 自由时间段模板为 None：容量在约课时按开始时间计算
    remaining_capacity: Optional[int]


def booking_window(template: Template, date_from: date, date_to: date, today: Optional[date] = None) -> Tuple[date, date]:
    """可约日期窗口 [max(from, today), min(to, today + max_advance_days)]"""
    today = today or get_today()
    return max(date_from, today), min(date_to, today + timedelta(days=template.max_advance_days))


def slot_key(template: Template, day: date, start: time, end: time) -> str:
    """时段容量键。自由时间段按开始时间计数，其余按完整时段计数。"""
    if isinstance(template, FreeTemplate):
        return f"{day.isoformat()}|{format_hhmm(start)}"
    return f"{day.isoformat()}|{format_hhmm(start)}-{format_hhmm(end)}"


def _occupied_counts(template: Template, bookings: Iterable) -> dict:
    counts: dict = {}
    for booking in bookings:
        if booking.status not in OCCUPYING_STATUSES:
            continue
        key = slot_key(template, booking.course_date, booking.start_time, booking.end_time)
        counts[key] = counts.get(key, 0) + 1
    return counts


class SlotSequence:
    """可约时段序列：惰性生成，可重复迭代（每次迭代重新计算）"""

    def __init__(self, template: Template, date_from: date, date_to: date,
                 bookings: Iterable = (), today: Optional[date] = None, include_full: bool = False):
        self.template = template
        self.start, self.end = booking_window(template, date_from, date_to, today)
        self.bookings = list(bookings)
        self.include_full = include_full

    def __iter__(self) -> Iterator[ResolvedSlot]:
        template = self.template
        counts = _occupied_counts(template, self.bookings)
        day = self.start
        while day <= self.end:
            if template.is_day_allowed(day):
                if isinstance(template, FreeTemplate):
                    span = template.free_time_range
                    yield ResolvedSlot(day, span.start_time, span.end_time, None)
                else:
                    for span in template.slots_for(day):
                        used = counts.get(slot_key(template, day, span.start_time, span.end_time), 0)
                        remaining = template.max_advance_nums - used
                        if remaining > 0 or self.include_full:
                            yield ResolvedSlot(day, span.start_time, span.end_time, max(remaining, 0))
            day += timedelta(days=1)


def resolve_slots(template: Template, date_from: date, date_to: date, bookings: Iterable = (),
                  *, today: Optional[date] = None, include_full: bool = False) -> SlotSequence:
    """将教练模板展开为 [date_from, date_to] 内的可约时段。

    bookings 为该教练在区间内的预约（只统计待确认与已确认）。
    include_full=True 时保留已约满的时段（仅用于展示）。
    """
    return SlotSequence(template, date_from, date_to, bookings, today=today, include_full=include_full)


def find_offered_slot(template: Template, day: date, start: time, end: time,
                      today: Optional[date] = None) -> Optional[TimeRange]:
    """校验时段是否由模板提供，返回模板中对应的时间段，否则返回 None。

    全日/按周模板要求开始与结束时间完全匹配；自由时间段要求整个区间落在 free_time_range 内。
    """
    if start >= end:
        return None
    window_start, window_end = booking_window(template, day, day, today)
    if window_start > window_end or not template.is_day_allowed(day):
        return None
    if isinstance(template, FreeTemplate):
        span = template.free_time_range
        return span if span.contains(start, end) else None
    for span in template.slots_for(day):
        if span.start_time == start and span.end_time == end:
            return span
    return None
