"""业务异常定义

业务异常统一携带 code 与 msg（detail = {"code", "msg"}），
存储不可用属于基础设施异常，与业务异常分开，调用方可据此决定是否重试。
"""
from typing import Any, Dict, Optional

from sqlalchemy.exc import InterfaceError, OperationalError

from yueke.core.config import settings


class BookingError(Exception):
    """业务规则校验失败的基类"""
    code: int = settings.UNKNOWN_ERROR_CODE
    default_msg: str = "业务处理失败"

    def __init__(self, msg: Optional[str] = None, code: Optional[int] = None, **extra: Any):
        self.code = code if code is not None else self.code
        self.msg = msg or self.default_msg
        self.detail: Dict[str, Any] = {"code": self.code, "msg": self.msg, **extra}
        super().__init__(self.msg)


class SlotNotOffered(BookingError):
    """教练模板未开放该时段（或无生效模板）"""
    code = settings.SLOT_NOT_OFFERED_CODE
    default_msg = "该时段未开放预约"


class SlotFull(BookingError):
    code = settings.SLOT_FULL_CODE
    default_msg = "该时段已约满"


class InsufficientLessons(BookingError):
    code = settings.INSUFFICIENT_LESSONS_CODE
    default_msg = "剩余课时不足"


class LessonsExpired(BookingError):
    code = settings.LESSONS_EXPIRED_CODE
    default_msg = "课时已过期"


class InvalidTransition(BookingError):
    code = settings.INVALID_TRANSITION_CODE
    default_msg = "当前预约状态不允许该操作"


class BookingClosed(BookingError):
    """师生关系已关闭预约"""
    code = settings.BOOKING_CLOSED_CODE
    default_msg = "教练已关闭预约"


class StudentTimeConflict(BookingError):
    code = settings.STUDENT_TIME_CONFLICT_CODE
    default_msg = "学员在该时间段已有预约"


class RelationNotFound(BookingError):
    code = settings.RELATION_NOT_FOUND_CODE
    default_msg = "师生关系不存在或已解除"


class BookingNotFound(BookingError):
    code = settings.BOOKING_NOT_FOUND_CODE
    default_msg = "预约不存在"


class QuotaExhausted(BookingError):
    """订阅消息额度不足"""
    code = settings.QUOTA_EXHAUSTED_CODE
    default_msg = "订阅消息额度不足"


class StoreUnavailable(Exception):
    """数据库不可用（连接失败、超时等），可重试"""
    def __init__(self, msg: str = "存储不可用"):
        self.code = settings.STORE_UNAVAILABLE_CODE
        self.msg = msg
        self.detail = {"code": self.code, "msg": msg}
        super().__init__(msg)


# 存储层需要转换为 StoreUnavailable 的异常
STORE_ERRORS = (OperationalError, InterfaceError)

# MySQL 死锁 / 锁等待超时，整个事务回滚后可以重试
RETRYABLE_DB_ERROR_CODES = (1213, 1205)


def is_retryable_db_error(exc: BaseException) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    args = getattr(exc.orig, "args", ())
    return bool(args) and args[0] in RETRYABLE_DB_ERROR_CODES


# 消息发送失败时写入日志的错误码
class DeliveryError:
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    NO_OPENID = "NO_OPENID"
    NO_TEMPLATE = "NO_TEMPLATE"
    DELIVERY_TIMEOUT = "DELIVERY_TIMEOUT"
    DELIVERY_FAILED = "DELIVERY_FAILED"
