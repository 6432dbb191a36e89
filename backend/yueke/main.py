import logging
from contextlib import asynccontextmanager
import asyncio
import os
import signal
import sys
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from yueke.core.config import settings
from yueke.core.datetime_utils import BEIJING_TZ
from yueke.db.base import engine, Base, redis, AsyncSessionLocal
import yueke.models  # noqa: F401  注册全部表
from yueke.services.booking_service import BookingCoordinator
from yueke.services.booking_notice_service import BookingNoticeService
from yueke.services.booking_reminder_service import send_upcoming_reminders
from yueke.services.booking_timeout_service import BookingTimeoutService
from yueke.services.lesson_expire_service import LessonExpireService
from yueke.services.notification_service import NotificationDispatcher
from yueke.services.wechat_service import WechatSubscribeSender

# 确保 logs 文件夹存在
os.makedirs(settings.LOG_DIR, exist_ok=True)

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    handlers=[
        logging.FileHandler(os.path.join(settings.LOG_DIR, "app.log"), encoding="utf-8"),  # 写入到文件
        logging.StreamHandler()  # 控制台同时输出
    ]
)
logger = logging.getLogger(__name__)


def build_services(session_factory=AsyncSessionLocal):
    """组装约课服务与消息分发服务，预约事件经 BookingNoticeService 转为订阅消息"""
    dispatcher = NotificationDispatcher(WechatSubscribeSender())
    coordinator = BookingCoordinator()
    coordinator.add_listener(BookingNoticeService(dispatcher, session_factory))
    return coordinator, dispatcher


coordinator, dispatcher = build_services()
scheduler = None


async def booking_timeout_job():
    """定时任务：取消开课时间已过仍未确认的预约"""
    try:
        async with AsyncSessionLocal() as db:
            count = await BookingTimeoutService.cancel_expired_pending_bookings(db, coordinator)
            if count > 0:
                logger.info(f"预约超时检查: 取消 {count} 个预约")
    except Exception as e:
        logger.error(f"预约超时检查失败: {str(e)}")


async def booking_reminder_job():
    """定时任务：发送 2~24 小时后开课的上课提醒"""
    try:
        async with AsyncSessionLocal() as db:
            await send_upcoming_reminders(db, dispatcher)
    except Exception as e:
        logger.error(f"上课提醒失败: {str(e)}")


async def retry_failed_messages_job():
    """定时任务：重发失败的订阅消息"""
    try:
        async with AsyncSessionLocal() as db:
            result = await dispatcher.retry_failed_messages(db)
            if result["total"] > 0:
                logger.info(f"消息重发: 总计{result['total']}, 成功{result['success']}, 失败{result['failed']}")
    except Exception as e:
        logger.error(f"消息重发失败: {str(e)}")


async def lesson_expire_job():
    """定时任务：清零已过有效期的课时"""
    try:
        async with AsyncSessionLocal() as db:
            await LessonExpireService.clear_expired_lessons(db)
    except Exception as e:
        logger.error(f"课时过期清零失败: {str(e)}")


@asynccontextmanager
async def lifespan():
    global scheduler

    try:
        # 测试 Redis 连接
        try:
            await asyncio.wait_for(redis.ping(), timeout=2)
            logger.info(" Redis connected successfully")
        except Exception as e:
            logger.critical(f" Redis connection failed: {e}")
            sys.exit(1)

        # 初始化数据库表（必要时）
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        # 启动 APScheduler（强制使用北京时间时区）
        scheduler = AsyncIOScheduler(timezone=BEIJING_TZ)
        scheduler.add_job(booking_timeout_job, "interval", minutes=settings.BOOKING_TIMEOUT_CHECK_MINUTES, id="booking_timeout")
        scheduler.add_job(booking_reminder_job, "interval", minutes=settings.BOOKING_REMINDER_INTERVAL_MINUTES, id="booking_reminder")
        scheduler.add_job(retry_failed_messages_job, "interval", minutes=settings.MESSAGE_RETRY_INTERVAL_MINUTES, id="retry_failed_messages")
        scheduler.add_job(lesson_expire_job, "cron", hour=settings.LESSON_EXPIRE_HOUR, minute=0, id="lesson_expire")
        scheduler.start()
        logger.info("✓ APScheduler 已启动")
        logger.info(f"  - 预约超时检查每 {settings.BOOKING_TIMEOUT_CHECK_MINUTES} 分钟执行一次")
        logger.info(f"  - 上课提醒每 {settings.BOOKING_REMINDER_INTERVAL_MINUTES} 分钟执行一次")
        logger.info(f"  - 失败消息重发每 {settings.MESSAGE_RETRY_INTERVAL_MINUTES} 分钟执行一次")
        logger.info(f"  - 课时过期清零每天 {settings.LESSON_EXPIRE_HOUR}:00 执行")

        logger.info(f" {settings.PROJECT_NAME} worker startup complete")
        yield

    finally:
        if scheduler and scheduler.running:
            scheduler.shutdown()
            logger.info("✓ APScheduler 已停止")

        try:
            await asyncio.wait_for(redis.aclose(), timeout=3)
            logger.info(" Redis connection closed")
        except asyncio.TimeoutError:
            logger.warning(" Redis close timed out")
        except Exception as e:
            logger.error(f"Redis close failed: {e}")

        try:
            await engine.dispose()
            logger.info("DB engine disposed")
        except Exception as e:
            logger.warning(f"DB engine dispose failed: {e}")

        logger.info("Worker shutdown complete")


async def main():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with lifespan():
        await stop.wait()


if __name__ == "__main__":
    asyncio.run(main())
