"""
课时过期服务
- 每天扫描有效且约课开启的师生关系
- 有效期已过的课时包剩余课时清零，记录清零前课时（original_lessons）并标记 is_cleared
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import date
from typing import Dict, Optional
import logging

from yueke.core.datetime_utils import get_today
from yueke.core.exceptions import StoreUnavailable, STORE_ERRORS
from yueke.models.student_coach_relation import StudentCoachRelation
from yueke.services.quota_service import QuotaLedger

logger = logging.getLogger(__name__)


class LessonExpireService:
    """过期课时清零"""

    @classmethod
    async def clear_expired_lessons(cls, db: AsyncSession, today: Optional[date] = None) -> Dict[str, int]:
        """
        清零 today 之前已过有效期的课时包

        每个师生关系单独加行锁、单独提交，与约课扣减课时互斥。
        返回: {relations: 有清零的关系数, packages: 清零的课时包数}
        """
        today = today or get_today()
        result = await db.execute(
            select(StudentCoachRelation.id).where(
                StudentCoachRelation.relation_status == 1,
                StudentCoachRelation.booking_status == 1,
            ).order_by(StudentCoachRelation.id)
        )
        relation_ids = list(result.scalars().all())
        await db.commit()

        stats = {"relations": 0, "packages": 0}
        for relation_id in relation_ids:
            try:
                relation = await QuotaLedger.lock_relation(db, relation_id)
                cleared = []
                if relation is not None and relation.relation_status == 1 and relation.booking_status == 1:
                    cleared = QuotaLedger.clear_expired_lessons(relation, today)
                await db.commit()
            except STORE_ERRORS as e:
                await db.rollback()
                logger.error(f"课时过期处理失败: relation_id={relation_id}, {str(e)}")
                raise StoreUnavailable(str(e)) from e
            if cleared:
                stats["relations"] += 1
                stats["packages"] += len(cleared)

        logger.info(f"课时过期检查完成: 处理 {stats['relations']} 个关系, 清零 {stats['packages']} 个课时包")
        return stats
