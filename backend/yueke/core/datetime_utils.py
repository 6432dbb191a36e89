"""北京时间（UTC+8）处理工具

该模块提供统一的时间处理函数，确保所有时间戳都使用北京时间（UTC+8）
而不是 UTC 时间，以保证学员端、教练端与定时任务看到的"今天"一致。
"""
from datetime import date, datetime, time, timezone, timedelta


# 北京时区（UTC+8）
BEIJING_TZ = timezone(timedelta(hours=8))


def get_now() -> datetime:
    """获取当前北京时间（带时区信息）。"""
    return datetime.now(BEIJING_TZ)


def get_now_naive() -> datetime:
    """获取当前北京时间（不带时区信息）。

    此函数用于与不支持时区的 ORM 或数据库字段兼容。
    返回的 datetime 对象表示的是北京时间，但不包含时区信息。
    """
    return get_now().replace(tzinfo=None)


def get_today() -> date:
    """获取北京时间的今天日期。"""
    return get_now().date()


def weekday_id(day: date) -> int:
    """返回星期编号：0=周日, 1=周一, ..., 6=周六。"""
    return (day.weekday() + 1) % 7


def parse_hhmm(value: str) -> time:
    """解析 HH:mm 格式的时间字符串。"""
    return datetime.strptime(value.strip(), "%H:%M").time()


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def combine(day: date, at: time) -> datetime:
    """合并日期与时间（不带时区信息，北京时间）。"""
    return datetime.combine(day, at)
