from sqlalchemy import Column, Integer, String, UniqueConstraint
from yueke.db.base import Base


class SlotOccupancy(Base):
    """时段占用计数：每个 (coach_id, slot_key) 一行，booked_count 为待确认+已确认的预约数。

    约课时对该行加行锁（SELECT ... FOR UPDATE）完成容量校验与计数，保证同一时段不会超约。
    """
    __tablename__ = "slot_occupancies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coach_id = Column(Integer, nullable=False, comment="教练 user_id")
    slot_key = Column(String(64), nullable=False, comment="时段容量键")
    booked_count = Column(Integer, nullable=False, default=0, comment="已占用数")

    __table_args__ = (
        UniqueConstraint('coach_id', 'slot_key', name='uk_coach_slot'),
        {'comment': '时段占用计数表'}
    )
