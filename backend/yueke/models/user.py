from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from yueke.db.base import Base


# USER数据库表类-模型（学员与教练共用）
class User(Base):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True)
    nickname = Column(String(64), nullable=True, comment="昵称")
    openid = Column(String(128), unique=True, index=True, nullable=True, comment="微信 openid，订阅消息接收者")

    # 教练端的课程类别：[{id, name, desc}]
    course_categories = Column(JSON, nullable=True, comment="课程类别列表(JSON)")

    created_at = Column(DateTime, nullable=False, server_default=func.now(), comment="创建时间")
