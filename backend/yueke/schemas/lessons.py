"""
课时余额与课程类别的 Pydantic schemas

StudentCoachRelation.lessons 保存为 [{category_id, remaining_lessons, expire_date?, original_lessons?, is_cleared?}]，
内部以 category_id 为键的 LessonLedger 操作，序列化时按原顺序还原为数组。
"""
import json
from datetime import date
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from yueke.core.exceptions import InsufficientLessons, LessonsExpired


class LessonBalance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_id: int = Field(..., description="课程类别ID")
    remaining_lessons: int = Field(0, ge=0, description="剩余课时")
    expire_date: Optional[date] = Field(None, description="课时有效期（含当天）")
    original_lessons: Optional[int] = Field(None, ge=0, description="过期清零前的剩余课时")
    is_cleared: Optional[bool] = Field(None, description="是否已过期清零")

    def is_expired(self, on_date: date) -> bool:
        return self.expire_date is not None and on_date > self.expire_date


class CourseCategory(BaseModel):
    """教练课程类别 {id, name, desc}"""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    desc: Optional[str] = None


def _load_list(raw: Any) -> List[Any]:
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw) if raw else None
    return list(raw or [])


def parse_course_categories(raw: Any) -> Dict[int, CourseCategory]:
    """解析教练课程类别，返回 {id: CourseCategory}"""
    categories = [CourseCategory.model_validate(item) for item in _load_list(raw)]
    return {c.id: c for c in categories}


class LessonLedger:
    """按课程类别记录的课时账本。

    category_id 在账本内唯一，剩余课时永远不会小于 0。
    """

    def __init__(self, balances: Iterable[LessonBalance] = ()):
        self._items: Dict[int, LessonBalance] = {}
        for balance in balances:
            if balance.category_id in self._items:
                raise ValueError(f"课程类别重复: {balance.category_id}")
            self._items[balance.category_id] = balance

    @classmethod
    def from_json(cls, raw: Any) -> "LessonLedger":
        return cls(LessonBalance.model_validate(item) for item in _load_list(raw))

    def to_json(self) -> List[Dict[str, Any]]:
        return [item.model_dump(mode="json", exclude_none=True) for item in self._items.values()]

    def __iter__(self) -> Iterator[LessonBalance]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def get(self, category_id: int) -> Optional[LessonBalance]:
        return self._items.get(category_id)

    def remaining(self, category_id: int) -> int:
        balance = self._items.get(category_id)
        return balance.remaining_lessons if balance else 0

    def debit(self, category_id: int, count: int = 1, on_date: Optional[date] = None) -> LessonBalance:
        balance = self._items.get(category_id)
        if balance is None or balance.remaining_lessons < count:
            raise InsufficientLessons(category_id=category_id, remaining=self.remaining(category_id))
        if on_date is not None and balance.is_expired(on_date):
            raise LessonsExpired(category_id=category_id, expire_date=balance.expire_date.isoformat())
        updated = balance.model_copy(update={"remaining_lessons": balance.remaining_lessons - count})
        self._items[category_id] = updated
        return updated

    def credit(self, category_id: int, count: int = 1, expire_date: Optional[date] = None) -> LessonBalance:
        if count < 0:
            raise ValueError("课时增加数不能为负")
        balance = self._items.get(category_id)
        if balance is None:
            balance = LessonBalance(category_id=category_id, remaining_lessons=0)
        update: Dict[str, Any] = {"remaining_lessons": balance.remaining_lessons + count}
        if expire_date is not None:
            # 续期后重新参与过期清零
            update.update(expire_date=expire_date, original_lessons=None, is_cleared=None)
        updated = balance.model_copy(update=update)
        self._items[category_id] = updated
        return updated

    def clear_expired(self, on_date: date) -> List[LessonBalance]:
        """将 on_date 时已过期的课时包清零，返回清零前的课时包。已清零的不再处理。"""
        cleared = []
        for category_id, balance in list(self._items.items()):
            if balance.is_cleared or not balance.is_expired(on_date):
                continue
            self._items[category_id] = balance.model_copy(update={
                "original_lessons": balance.remaining_lessons,
                "remaining_lessons": 0,
                "is_cleared": True,
            })
            cleared.append(balance)
        return cleared
