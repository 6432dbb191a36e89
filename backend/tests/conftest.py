from datetime import date, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from yueke.db.base import Base
from yueke.models import StudentCoachRelation, TimeTemplate, User, UserSubscribeQuota
from yueke.models.time_template import TimeType
from yueke.schemas.time_template import WEEKDAY_TEXTS


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def today() -> date:
    # 周一
    return date(2025, 6, 2)


@pytest.fixture
def tomorrow(today) -> date:
    return today + timedelta(days=1)


@pytest.fixture
async def engine(anyio_backend, tmp_path):
    # 文件库 + BEGIN IMMEDIATE：并发写事务按顺序执行，行为接近 MySQL 行锁
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'yueke.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


def date_slots(unchecked=()):
    return [{"id": i, "text": WEEKDAY_TEXTS[i], "checked": i not in unchecked} for i in range(7)]


class Seeder:
    """测试数据写入"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
            return obj

    async def user(self, nickname="用户", openid=None, course_categories=None) -> int:
        user = await self._add(User(nickname=nickname, openid=openid, course_categories=course_categories))
        return user.user_id

    async def template(self, coach_id, time_type=TimeType.FULL, **fields) -> int:
        values = {
            "time_slots": [{"startTime": "09:00", "endTime": "10:00"}],
            "date_slots": date_slots(),
            "max_advance_days": 7,
            "max_advance_nums": 1,
        }
        values.update(fields)
        template = await self._add(TimeTemplate(coach_id=coach_id, time_type=int(time_type), is_active=True, **values))
        return template.id

    async def relation(self, student_id, coach_id, lessons=None, auto_confirm=False, student_name=None) -> int:
        if lessons is None:
            lessons = [{"category_id": 0, "remaining_lessons": 10}]
        relation = await self._add(StudentCoachRelation(
            student_id=student_id,
            coach_id=coach_id,
            lessons=lessons,
            auto_confirm_by_coach=auto_confirm,
            student_name=student_name,
        ))
        return relation.id

    async def quota(self, user_id, template_type, remaining, template_id="tmpl") -> None:
        await self._add(UserSubscribeQuota(
            user_id=user_id,
            template_type=template_type,
            template_id=template_id,
            remaining_quota=remaining,
            total_quota=remaining,
        ))

    async def get(self, model, pk):
        async with self.session_factory() as db:
            obj = await db.get(model, pk)
            await db.commit()
            return obj


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
