from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from redis.asyncio import Redis

from yueke.core.config import settings

#异步引擎连接数据库(echo表输出日志)
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,        # 每次从连接池获取连接时先 ping 测试是否有效
    pool_recycle=3600,          # 连接回收时间（秒），避免使用超时的连接
    pool_size=10,
    max_overflow=20,
    pool_timeout=30,
    connect_args={
        "connect_timeout": 10   # MySQL 连接超时（秒）
    }
)

#事务处理
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

#全局Base
Base = declarative_base()

#Redis数据库连接（access_token 缓存）
redis = Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, decode_responses=True, password=settings.REDIS_PASSWORD)
