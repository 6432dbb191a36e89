from sqlalchemy import Column, Integer, Boolean, DateTime, JSON, Index
from sqlalchemy.sql import func
from yueke.db.base import Base
import enum


class TimeType(enum.IntEnum):
    FULL = 0      # 全日统一时段
    WEEKLY = 1    # 按星期配置时段
    FREE = 2      # 自由时间段


class TimeTemplate(Base):
    """
    教练可约时间模板：
    - time_type: 决定 time_slots / week_slots / free_time_range 中哪一个生效
    - date_slots: 7 个星期开关 [{id: 0-6, text, checked}]，0 表示周日
    - max_advance_days: 最多可提前预约的天数（含当天起算的最后一天）
    - max_advance_nums: 同一时段最多可接受的预约数
    - is_active: 每个教练仅使用一个生效模板
    JSON 字段保存原始结构，解析见 yueke.schemas.time_template
    """
    __tablename__ = "time_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coach_id = Column(Integer, nullable=False, index=True, comment="教练 user_id")

    time_type = Column(Integer, nullable=False, default=TimeType.FULL, comment="时间类型 0全日 1按周 2自由")
    time_slots = Column(JSON, nullable=True, comment="全日时段 [{startTime, endTime}]")
    week_slots = Column(JSON, nullable=True, comment="按周时段 {weekday: [{startTime, endTime}]}")
    free_time_range = Column(JSON, nullable=True, comment="自由时间段 {startTime, endTime}")
    date_slots = Column(JSON, nullable=True, comment="星期开关 [{id, text, checked}]")

    max_advance_days = Column(Integer, nullable=False, default=5, comment="最多提前预约天数")
    max_advance_nums = Column(Integer, nullable=False, default=1, comment="同一时段最多预约数")

    is_active = Column(Boolean, nullable=False, default=True, comment="是否为生效模板")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        Index('idx_coach_active', 'coach_id', 'is_active'),
        {'comment': '教练可约时间模板表'}
    )
