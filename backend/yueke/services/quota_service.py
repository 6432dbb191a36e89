"""
额度账本服务
- 课时：按课程类别扣减/退还师生关系上的剩余课时
- 订阅消息额度：按 (用户, 模板类型) 扣减/退还/授权

课时扣减与退还不提交事务，由预约流程在同一事务中与预约记录一起提交；
调用方必须已对师生关系加行锁（见 lock_relation）。
"""
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.datetime_utils import get_now_naive
from yueke.core.exceptions import QuotaExhausted
from yueke.models.student_coach_relation import StudentCoachRelation
from yueke.models.user_subscribe_quota import UserSubscribeQuota
from yueke.schemas.lessons import LessonBalance, LessonLedger

logger = logging.getLogger(__name__)


class QuotaLedger:
    """课时与订阅消息额度"""

    # ========== 课时 ========== #
    @classmethod
    async def lock_relation(cls, db: AsyncSession, relation_id: int) -> Optional[StudentCoachRelation]:
        """对师生关系加行锁并读取最新数据"""
        result = await db.execute(
            select(StudentCoachRelation)
            .where(StudentCoachRelation.id == relation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @classmethod
    def debit_lesson(cls, relation: StudentCoachRelation, category_id: int, count: int = 1,
                     on_date: Optional[date] = None) -> LessonBalance:
        """扣减课时，余额不足抛 InsufficientLessons，课时过期抛 LessonsExpired"""
        ledger = LessonLedger.from_json(relation.lessons)
        balance = ledger.debit(category_id, count, on_date=on_date)
        relation.lessons = ledger.to_json()
        logger.info(f"扣减课时: relation_id={relation.id}, category_id={category_id}, 剩余={balance.remaining_lessons}")
        return balance

    @classmethod
    def credit_lesson(cls, relation: StudentCoachRelation, category_id: int, count: int = 1,
                      expire_date: Optional[date] = None) -> LessonBalance:
        """退还/增加课时，类别不存在时新建"""
        ledger = LessonLedger.from_json(relation.lessons)
        balance = ledger.credit(category_id, count, expire_date=expire_date)
        relation.lessons = ledger.to_json()
        logger.info(f"增加课时: relation_id={relation.id}, category_id={category_id}, 剩余={balance.remaining_lessons}")
        return balance

    @classmethod
    def clear_expired_lessons(cls, relation: StudentCoachRelation, on_date: date) -> List[LessonBalance]:
        """清零已过期的课时包，返回清零前的课时包。不提交事务。"""
        ledger = LessonLedger.from_json(relation.lessons)
        cleared = ledger.clear_expired(on_date)
        if cleared:
            relation.lessons = ledger.to_json()
            for balance in cleared:
                logger.info(
                    f"课时过期清零: relation_id={relation.id}, category_id={balance.category_id}, "
                    f"清零{balance.remaining_lessons}节, 有效期={balance.expire_date}"
                )
        return cleared

    # ========== 订阅消息额度 ========== #
    @classmethod
    async def debit_message_quota(cls, db: AsyncSession, user_id: int, template_type: str) -> None:
        """原子扣减 1 次额度（remaining_quota > 0 时才更新），不足抛 QuotaExhausted。不提交事务。"""
        result = await db.execute(
            update(UserSubscribeQuota)
            .where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
                UserSubscribeQuota.remaining_quota > 0,
            )
            .values(
                remaining_quota=UserSubscribeQuota.remaining_quota - 1,
                last_sent_at=get_now_naive(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"订阅额度不足: user_id={user_id}, template_type={template_type}")
            raise QuotaExhausted(user_id=user_id, template_type=template_type)

    @classmethod
    async def refund_message_quota(cls, db: AsyncSession, user_id: int, template_type: str) -> None:
        """退还 1 次额度（消息确定未送达），不改变 total_quota。不提交事务。"""
        await db.execute(
            update(UserSubscribeQuota)
            .where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
            )
            .values(remaining_quota=UserSubscribeQuota.remaining_quota + 1)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"退还订阅额度: user_id={user_id}, template_type={template_type}")

    @classmethod
    async def authorize(cls, db: AsyncSession, user_id: int, template_type: str, delta: int = 1,
                        template_id: Optional[str] = None) -> None:
        """用户授权订阅消息后增加额度（remaining 与 total 同时增加）"""
        if delta <= 0:
            raise ValueError("授权次数必须大于 0")
        try:
            updated = await cls._increase_quota(db, user_id, template_type, delta, template_id)
            if not updated:
                try:
                    async with db.begin_nested():
                        db.add(UserSubscribeQuota(
                            user_id=user_id,
                            template_type=template_type,
                            template_id=template_id,
                            remaining_quota=delta,
                            total_quota=delta,
                            last_authorized_at=get_now_naive(),
                        ))
                except IntegrityError:
                    # 并发授权已插入该行
                    await cls._increase_quota(db, user_id, template_type, delta, template_id)
            await db.commit()
            logger.info(f"订阅授权: user_id={user_id}, template_type={template_type}, +{delta}")
        except Exception:
            await db.rollback()
            raise

    @classmethod
    async def _increase_quota(cls, db: AsyncSession, user_id: int, template_type: str, delta: int,
                              template_id: Optional[str]) -> bool:
        values = {
            "remaining_quota": UserSubscribeQuota.remaining_quota + delta,
            "total_quota": UserSubscribeQuota.total_quota + delta,
            "last_authorized_at": get_now_naive(),
        }
        if template_id:
            values["template_id"] = template_id
        result = await db.execute(
            update(UserSubscribeQuota)
            .where(
                UserSubscribeQuota.user_id == user_id,
                UserSubscribeQuota.template_type == template_type,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @classmethod
    async def reset_message_quota(cls, db: AsyncSession, user_id: int, template_type: str) -> None:
        """用户在微信端拒收后清空剩余额度"""
        try:
            await db.execute(
                update(UserSubscribeQuota)
                .where(
                    UserSubscribeQuota.user_id == user_id,
                    UserSubscribeQuota.template_type == template_type,
                )
                .values(remaining_quota=0)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    @classmethod
    async def get_user_quotas(cls, db: AsyncSession, user_id: int) -> List[UserSubscribeQuota]:
        result = await db.execute(
            select(UserSubscribeQuota)
            .where(UserSubscribeQuota.user_id == user_id)
            .order_by(UserSubscribeQuota.template_type)
        )
        quotas = list(result.scalars().all())
        await db.commit()
        return quotas
