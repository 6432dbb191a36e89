"""
师生关系服务
- 教练关闭/重新开放某个学员的预约
- 为学员增加课时
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from yueke.core.datetime_utils import get_now_naive
from yueke.core.exceptions import RelationNotFound, StoreUnavailable, STORE_ERRORS
from yueke.models.student_coach_relation import StudentCoachRelation
from yueke.schemas.lessons import LessonBalance
from yueke.services.quota_service import QuotaLedger

logger = logging.getLogger(__name__)


class RelationService:

    @classmethod
    async def close_booking(cls, db: AsyncSession, relation_id: int) -> StudentCoachRelation:
        """关闭预约：之后该学员无法再约课，已有预约不受影响"""
        return await cls._set_booking_status(db, relation_id, 0)

    @classmethod
    async def open_booking(cls, db: AsyncSession, relation_id: int) -> StudentCoachRelation:
        return await cls._set_booking_status(db, relation_id, 1)

    @classmethod
    async def _set_booking_status(cls, db: AsyncSession, relation_id: int, status: int) -> StudentCoachRelation:
        try:
            relation = await QuotaLedger.lock_relation(db, relation_id)
            if relation is None:
                raise RelationNotFound(relation_id=relation_id)
            if relation.booking_status != status:
                relation.booking_status = status
                if status == 0:
                    relation.booking_closed_at = get_now_naive()
                else:
                    relation.booking_reopened_at = get_now_naive()
            await db.commit()
            logger.info(f"师生关系预约开关: relation_id={relation_id}, booking_status={status}")
            return relation
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e
        except Exception:
            await db.rollback()
            raise

    @classmethod
    async def add_lessons(cls, db: AsyncSession, relation_id: int, category_id: int, count: int,
                          expire_date: Optional[date] = None) -> LessonBalance:
        """增加某课程类别的课时，可同时更新有效期"""
        try:
            relation = await QuotaLedger.lock_relation(db, relation_id)
            if relation is None:
                raise RelationNotFound(relation_id=relation_id)
            balance = QuotaLedger.credit_lesson(relation, category_id, count, expire_date=expire_date)
            await db.commit()
            return balance
        except STORE_ERRORS as e:
            await db.rollback()
            raise StoreUnavailable(str(e)) from e
        except Exception:
            await db.rollback()
            raise
