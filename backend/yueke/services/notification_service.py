"""
订阅消息分发服务
- 每个 (业务类型, 业务ID, 模板类型, 接收人) 只发送一次：先写 SENDING 日志，唯一键冲突即视为已处理
- 发送前扣减用户订阅额度，额度不足直接记为失败
- 发送带超时；结果写回日志，失败可在重试上限内重发

发送调用不在数据库事务内进行。
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.config import settings
from yueke.core.datetime_utils import get_now_naive
from yueke.core.exceptions import DeliveryError, QuotaExhausted, StoreUnavailable, STORE_ERRORS
from yueke.models.subscribe_message_log import SendStatus, SubscribeMessageLog
from yueke.models.user import User
from yueke.models.user_subscribe_quota import UserSubscribeQuota
from yueke.services.quota_service import QuotaLedger

logger = logging.getLogger(__name__)


class TemplateType:
    BOOKING_CONFIRM = "BOOKING_CONFIRM"    # 预约待确认提醒
    BOOKING_SUCCESS = "BOOKING_SUCCESS"    # 预约成功通知
    BOOKING_CANCEL = "BOOKING_CANCEL"      # 预约取消通知
    BOOKING_REMINDER = "BOOKING_REMINDER"  # 上课提醒

    ALL = (BOOKING_CONFIRM, BOOKING_SUCCESS, BOOKING_CANCEL, BOOKING_REMINDER)


# 重试也无法成功的失败原因
NON_RETRYABLE_ERRORS = (DeliveryError.QUOTA_EXHAUSTED, DeliveryError.NO_OPENID, DeliveryError.NO_TEMPLATE)


def default_template_ids() -> Dict[str, str]:
    return {t: getattr(settings, f"WECHAT_TEMPLATE_{t}", "") for t in TemplateType.ALL}


@dataclass(frozen=True)
class SendResult:
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class MessageSender(Protocol):
    async def send(self, template_id: str, receiver_openid: str, message_data: Dict[str, Any],
                   page_path: Optional[str] = None) -> SendResult:
        ...


@dataclass(frozen=True)
class DispatchResult:
    log_id: int
    status: SendStatus
    error_code: Optional[str] = None
    # True 表示该业务事件已处理过，本次没有发送
    duplicate: bool = False


class NotificationDispatcher:

    def __init__(self, sender: MessageSender, template_ids: Optional[Dict[str, str]] = None):
        self.sender = sender
        self.template_ids = template_ids if template_ids is not None else default_template_ids()

    async def dispatch(
        self,
        db: AsyncSession,
        business_type: str,
        business_id: int,
        template_type: str,
        receiver_user_id: int,
        message_data: Dict[str, Any],
        page_path: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> DispatchResult:
        """发送订阅消息，同一业务事件同一接收人同一模板最多发送一次"""
        try:
            openid = await db.scalar(select(User.openid).where(User.user_id == receiver_user_id))
            template_id = await self._resolve_template_id(db, receiver_user_id, template_type)
            log = SubscribeMessageLog(
                business_type=business_type,
                business_id=business_id,
                template_type=template_type,
                template_id=template_id,
                receiver_user_id=receiver_user_id,
                receiver_openid=openid,
                message_data=message_data,
                page_path=page_path,
                send_status=SendStatus.SENDING,
                retry_count=0,
            )
            db.add(log)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return await self._existing_outcome(db, business_type, business_id, template_type, receiver_user_id)
        except STORE_ERRORS as e:
            await db.rollback()
            logger.error(f"写入消息日志失败（数据库不可用）: {str(e)}")
            raise StoreUnavailable(str(e)) from e

        return await self._deliver(db, log, timeout)

    async def retry(self, db: AsyncSession, log_id: int, *, timeout: Optional[float] = None) -> Optional[DispatchResult]:
        """重发失败的消息。只有 FAILED 且未达重试上限的消息会被重发，返回 None 表示未重发。"""
        try:
            claimed = await db.execute(
                update(SubscribeMessageLog)
                .where(
                    SubscribeMessageLog.id == log_id,
                    SubscribeMessageLog.send_status == SendStatus.FAILED,
                    SubscribeMessageLog.retry_count < settings.MESSAGE_MAX_RETRY,
                )
                .values(send_status=SendStatus.SENDING)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                await db.commit()
                return None
            log = (await db.execute(
                select(SubscribeMessageLog)
                .where(SubscribeMessageLog.id == log_id)
                .execution_options(populate_existing=True)
            )).scalar_one()
            await db.commit()
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e

        logger.info(f"重发订阅消息: log_id={log_id}, 已失败{log.retry_count}次")
        return await self._deliver(db, log, timeout)

    async def retry_failed_messages(self, db: AsyncSession, limit: int = 100) -> Dict[str, int]:
        """定时任务：重发因发送失败或超时而失败的消息"""
        result = await db.execute(
            select(SubscribeMessageLog.id)
            .where(
                SubscribeMessageLog.send_status == SendStatus.FAILED,
                SubscribeMessageLog.retry_count < settings.MESSAGE_MAX_RETRY,
                or_(
                    SubscribeMessageLog.error_code.is_(None),
                    SubscribeMessageLog.error_code.notin_(NON_RETRYABLE_ERRORS),
                ),
            )
            .order_by(SubscribeMessageLog.id)
            .limit(limit)
        )
        log_ids = list(result.scalars().all())
        await db.commit()

        stats = {"total": 0, "success": 0, "failed": 0}
        for log_id in log_ids:
            outcome = await self.retry(db, log_id)
            if outcome is None:
                continue
            stats["total"] += 1
            if outcome.status == SendStatus.SUCCESS:
                stats["success"] += 1
            else:
                stats["failed"] += 1
        return stats

    # ========== 内部方法 ========== #
    async def _resolve_template_id(self, db: AsyncSession, user_id: int, template_type: str) -> Optional[str]:
        template_id = self.template_ids.get(template_type)
        if template_id:
            return template_id
        # 未配置时使用用户授权时记录的模板ID
        return await db.scalar(
            select(UserSubscribeQuota.template_id).where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
            )
        )

    async def _existing_outcome(self, db: AsyncSession, business_type: str, business_id: int,
                                template_type: str, receiver_user_id: int) -> DispatchResult:
        existing = (await db.execute(
            select(SubscribeMessageLog).where(
                SubscribeMessageLog.business_type == business_type,
                SubscribeMessageLog.business_id == business_id,
                SubscribeMessageLog.template_type == template_type,
                SubscribeMessageLog.receiver_user_id == receiver_user_id,
            )
        )).scalar_one()
        await db.commit()
        logger.info(f"订阅消息已处理过，跳过: log_id={existing.id}, 状态={existing.send_status.value}")
        return DispatchResult(existing.id, existing.send_status, existing.error_code, duplicate=True)

    async def _deliver(self, db: AsyncSession, log: SubscribeMessageLog, timeout: Optional[float]) -> DispatchResult:
        if not log.receiver_openid:
            return await self._fail(db, log, DeliveryError.NO_OPENID, "接收者未绑定微信")
        if not log.template_id:
            return await self._fail(db, log, DeliveryError.NO_TEMPLATE, f"未配置模板: {log.template_type}")

        try:
            await QuotaLedger.debit_message_quota(db, log.receiver_user_id, log.template_type)
            await db.commit()
        except QuotaExhausted as e:
            return await self._fail(db, log, DeliveryError.QUOTA_EXHAUSTED, e.msg)
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e

        timeout = settings.MESSAGE_SEND_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            result = await asyncio.wait_for(
                self.sender.send(log.template_id, log.receiver_openid, log.message_data, log.page_path),
                timeout,
            )
        except asyncio.TimeoutError:
            # 结果未知，额度不退还
            return await self._fail(db, log, DeliveryError.DELIVERY_TIMEOUT, f"发送超时（{timeout}秒）")
        except Exception as e:
            logger.error(f"订阅消息发送异常: log_id={log.id}, {str(e)}", exc_info=True)
            result = SendResult(False, DeliveryError.DELIVERY_FAILED, str(e))

        if not result.success:
            return await self._fail(db, log, result.error_code or DeliveryError.DELIVERY_FAILED,
                                    result.error_message, refund=True)

        try:
            log.send_status = SendStatus.SUCCESS
            log.send_time = get_now_naive()
            log.error_code = None
            log.error_message = None
            await db.commit()
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e
        logger.info(f"订阅消息发送成功: log_id={log.id}, template_type={log.template_type}, user_id={log.receiver_user_id}")
        return DispatchResult(log.id, SendStatus.SUCCESS)

    async def _fail(self, db: AsyncSession, log: SubscribeMessageLog, error_code: str,
                    error_message: Optional[str], refund: bool = False) -> DispatchResult:
        try:
            if refund:
                await QuotaLedger.refund_message_quota(db, log.receiver_user_id, log.template_type)
            log.send_status = SendStatus.FAILED
            log.error_code = error_code
            log.error_message = error_message
            log.retry_count = (log.retry_count or 0) + 1
            await db.commit()
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e
        logger.warning(f"订阅消息发送失败: log_id={log.id}, error_code={error_code}, error_message={error_message}")
        return DispatchResult(log.id, SendStatus.FAILED, error_code)
