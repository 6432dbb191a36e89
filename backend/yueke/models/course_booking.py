from sqlalchemy import Column, Integer, String, Date, Time, DateTime, Enum, Index
from sqlalchemy.sql import func
from yueke.db.base import Base
import enum


class BookingStatus(enum.Enum):
    PENDING = "pending"        # 待确认
    CONFIRMED = "confirmed"    # 已确认
    CANCELLED = "cancelled"    # 已取消
    REOPENED = "reopened"      # 取消后重新开放时段


# 占用时段容量的状态
OCCUPYING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class CourseBooking(Base):
    """
    课程预约表：
    - slot_key: 该预约占用的时段容量键，与 SlotOccupancy.slot_key 对应
    - status: 预约状态（枚举），流转规则见 yueke.services.booking_service
    - created_by / cancelled_by: 操作人 user_id，cancelled_by 为空表示系统取消
    """
    __tablename__ = "course_bookings"

    id = Column(Integer, primary_key=True, autoincrement=True, comment="预约ID")
    relation_id = Column(Integer, nullable=False, index=True, comment="师生关系ID")
    student_id = Column(Integer, nullable=False, index=True, comment="学员 user_id")
    coach_id = Column(Integer, nullable=False, index=True, comment="教练 user_id")
    category_id = Column(Integer, nullable=False, default=0, comment="课程类别ID")

    course_date = Column(Date, nullable=False, comment="上课日期")
    start_time = Column(Time, nullable=False, comment="开始时间")
    end_time = Column(Time, nullable=False, comment="结束时间")
    slot_key = Column(String(64), nullable=False, comment="时段容量键")

    status = Column(
        Enum(BookingStatus, values_callable=lambda e: [v.value for v in e], name="bookingstatus", native_enum=False),
        default=BookingStatus.PENDING,
        nullable=False,
        comment="预约状态"
    )

    created_by = Column(Integer, nullable=True, comment="发起人 user_id")
    student_remark = Column(String(255), nullable=True, comment="学员备注")
    coach_remark = Column(String(255), nullable=True, comment="教练备注")

    confirmed_at = Column(DateTime, nullable=True, comment="确认时间")
    cancelled_at = Column(DateTime, nullable=True, comment="取消时间")
    cancelled_by = Column(Integer, nullable=True, comment="取消人 user_id，空表示系统")
    cancel_reason = Column(String(255), nullable=True, comment="取消原因")
    reopened_at = Column(DateTime, nullable=True, comment="重新开放时间")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        Index('idx_coach_date', 'coach_id', 'course_date'),
        Index('idx_student_date', 'student_id', 'course_date'),
        Index('idx_status_date', 'status', 'course_date'),
        {'comment': '课程预约表'}
    )
