"""订阅消息发送日志表模型"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum, Index, UniqueConstraint
from sqlalchemy.sql import func
from yueke.db.base import Base
import enum


class SendStatus(enum.Enum):
    SENDING = "sending"    # 发送中
    SUCCESS = "success"    # 发送成功
    FAILED = "failed"      # 发送失败


class SubscribeMessageLog(Base):
    """订阅消息发送日志表

    每个 (业务类型, 业务ID, 模板类型, 接收人) 至多一行，唯一键保证同一业务事件不会重复发送。
    状态：SENDING -> SUCCESS / FAILED，FAILED 可在重试上限内重新进入 SENDING，SUCCESS 为终态。
    """
    __tablename__ = "subscribe_message_logs"

    id = Column(Integer, primary_key=True, index=True, comment="主键ID")

    business_type = Column(String(50), nullable=False, comment="业务类型: course_booking")
    business_id = Column(Integer, nullable=False, comment="业务ID")
    template_type = Column(String(50), nullable=False, comment="模板类型")
    template_id = Column(String(100), nullable=True, comment="微信模板ID")

    receiver_user_id = Column(Integer, nullable=False, index=True, comment="接收者用户ID")
    receiver_openid = Column(String(128), nullable=True, comment="接收者 openid")

    message_data = Column(JSON, nullable=True, comment="消息内容")
    page_path = Column(String(255), nullable=True, comment="跳转页面路径")

    send_status = Column(
        Enum(SendStatus, values_callable=lambda e: [v.value for v in e], name="sendstatus", native_enum=False),
        default=SendStatus.SENDING,
        nullable=False,
        comment="发送状态"
    )
    send_time = Column(DateTime, nullable=True, comment="发送成功时间")
    error_code = Column(String(50), nullable=True, comment="错误码")
    error_message = Column(Text, nullable=True, comment="错误信息")
    retry_count = Column(Integer, nullable=False, default=0, comment="失败次数")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        UniqueConstraint('business_type', 'business_id', 'template_type', 'receiver_user_id', name='uk_business_template_receiver'),
        Index('idx_status_retry', 'send_status', 'retry_count'),
        {'comment': '订阅消息发送日志表'}
    )
