from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from yueke.db.base import Base


class UserSubscribeQuota(Base):
    """用户订阅消息额度表

    微信一次性订阅消息：用户每授权一次，对应模板可发送一条。
    remaining_quota 不会小于 0；total_quota 只在授权时增加。
    """
    __tablename__ = "user_subscribe_quotas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")
    template_type = Column(String(50), nullable=False, comment="模板类型: BOOKING_CONFIRM, BOOKING_SUCCESS...")
    template_id = Column(String(100), nullable=True, comment="微信模板ID")

    remaining_quota = Column(Integer, nullable=False, default=0, comment="剩余可发送次数")
    total_quota = Column(Integer, nullable=False, default=0, comment="累计授权次数")

    last_authorized_at = Column(DateTime, nullable=True, comment="最后授权时间")
    last_sent_at = Column(DateTime, nullable=True, comment="最后发送时间")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        UniqueConstraint('user_id', 'template_type', name='uk_user_template'),
        {'comment': '用户订阅消息额度表'}
    )
