# 导入所有模型，确保SQLAlchemy能够正确识别它们（create_all 依赖）
from .user import User
from .time_template import TimeTemplate, TimeType
from .student_coach_relation import StudentCoachRelation
from .course_booking import CourseBooking, BookingStatus
from .slot_occupancy import SlotOccupancy
from .user_subscribe_quota import UserSubscribeQuota
from .subscribe_message_log import SubscribeMessageLog, SendStatus

__all__ = [
    "User",
    "TimeTemplate",
    "TimeType",
    "StudentCoachRelation",
    "CourseBooking",
    "BookingStatus",
    "SlotOccupancy",
    "UserSubscribeQuota",
    "SubscribeMessageLog",
    "SendStatus",
]
