from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from yueke.db.base import Base


class StudentCoachRelation(Base):
    """
    师生关系表：
    - lessons: 按课程类别记录剩余课时 [{category_id, remaining_lessons, expire_date?}]
    - auto_confirm_by_coach: 教练是否自动确认该学员的预约
    - relation_status: 1 正常 / 0 已解除
    - booking_status: 1 开放预约 / 0 关闭预约
    lessons 的读写统一经过 yueke.schemas.lessons.LessonLedger，保证 category_id 唯一、课时非负
    """
    __tablename__ = "student_coach_relations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, nullable=False, index=True, comment="学员 user_id")
    coach_id = Column(Integer, nullable=False, index=True, comment="教练 user_id")
    student_name = Column(String(64), nullable=True, comment="教练给学员的备注名")

    lessons = Column(JSON, nullable=True, comment="课时余额(JSON)")
    auto_confirm_by_coach = Column(Boolean, nullable=False, default=False, comment="教练自动确认预约")

    relation_status = Column(Integer, nullable=False, default=1, comment="关系状态 1正常 0解除")
    booking_status = Column(Integer, nullable=False, default=1, comment="预约开关 1开放 0关闭")
    booking_closed_at = Column(DateTime, nullable=True, comment="关闭预约时间")
    booking_reopened_at = Column(DateTime, nullable=True, comment="重新开放预约时间")

    last_course_time = Column(DateTime, nullable=True, comment="最近一次约课时间")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        UniqueConstraint('student_id', 'coach_id', name='uk_student_coach'),
        {'comment': '师生关系表'}
    )
