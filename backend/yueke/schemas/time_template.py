"""
教练可约时间模板的 Pydantic schemas

time_type 决定哪一组时段生效，模板按 time_type 解析为三种互斥的类型：
FullTemplate(0) / WeeklyTemplate(1) / FreeTemplate(2)。
JSON 数组（date_slots、week_slots 的旧格式）在内部按 id 转为字典，序列化时再还原为有序数组。
"""
import json
from datetime import date, time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator, model_validator

from yueke.core.datetime_utils import format_hhmm, parse_hhmm, weekday_id

WEEKDAY_TEXTS = ["周日", "周一", "周二", "周三", "周四", "周五", "周六"]


class TimeRange(BaseModel):
    """时间段 {startTime, endTime}，格式 HH:mm"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    start_time: time = Field(..., alias="startTime")
    end_time: time = Field(..., alias="endTime")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time(cls, value):
        # 兼容 HH:mm:ss
        if isinstance(value, str):
            return parse_hhmm(value[:5])
        return value

    @model_validator(mode="after")
    def check_order(self):
        if self.start_time >= self.end_time:
            raise ValueError("开始时间必须早于结束时间")
        return self

    @field_serializer("start_time", "end_time")
    def dump_hhmm(self, value: time) -> str:
        return format_hhmm(value)

    def contains(self, start: time, end: time) -> bool:
        return self.start_time <= start and end <= self.end_time


class DateSlot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int = Field(..., ge=0, le=6, description="星期编号，0 为周日")
    text: str = ""
    checked: bool = True


def default_date_slots() -> Dict[int, DateSlot]:
    return {i: DateSlot(id=i, text=WEEKDAY_TEXTS[i], checked=True) for i in range(7)}


def _load_json(value: Any) -> Any:
    # MySQL 老数据里 JSON 字段可能以字符串形式存储
    if isinstance(value, (str, bytes)):
        return json.loads(value) if value else None
    return value


class _TemplateBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[int] = None
    coach_id: Optional[int] = None
    date_slots: Dict[int, DateSlot] = Field(default_factory=default_date_slots)
    max_advance_days: int = Field(5, ge=0, description="最多提前预约天数")
    max_advance_nums: int = Field(1, ge=1, description="同一时段最多预约数")

    @field_validator("date_slots", mode="before")
    @classmethod
    def key_date_slots(cls, value):
        value = _load_json(value)
        if value is None:
            return default_date_slots()
        if isinstance(value, dict):
            items = [DateSlot.model_validate(item) for item in value.values()]
            if any(int(key) != item.id for key, item in zip(value, items)):
                raise ValueError("date_slots 的键必须与星期编号一致")
        else:
            items = [DateSlot.model_validate(item) for item in value]
        keyed = {item.id: item for item in items}
        if len(items) != 7 or len(keyed) != 7:
            raise ValueError("date_slots 必须包含 0-6 共 7 个不重复的星期")
        return keyed

    @field_serializer("date_slots")
    def dump_date_slots(self, value: Dict[int, DateSlot]) -> List[Dict[str, Any]]:
        return [value[i].model_dump() for i in sorted(value)]

    def is_day_allowed(self, day: date) -> bool:
        slot = self.date_slots.get(weekday_id(day))
        return bool(slot and slot.checked)


class FullTemplate(_TemplateBase):
    """全日模板：time_slots 对每个允许的日期生效"""
    time_type: Literal[0] = 0
    time_slots: List[TimeRange] = Field(default_factory=list)

    @field_validator("time_slots", mode="before")
    @classmethod
    def load_time_slots(cls, value):
        return _load_json(value) or []

    def slots_for(self, day: date) -> List[TimeRange]:
        return list(self.time_slots)


class WeeklyTemplate(_TemplateBase):
    """按周模板：week_slots 按星期编号配置时段，未配置的星期没有时段"""
    time_type: Literal[1] = 1
    week_slots: Dict[int, List[TimeRange]] = Field(default_factory=dict)

    @field_validator("week_slots", mode="before")
    @classmethod
    def key_week_slots(cls, value):
        value = _load_json(value)
        if not value:
            return {}
        if isinstance(value, dict):
            return value
        # 旧格式：[{id, text, checked, time_slots}]
        keyed = {}
        for item in value:
            if item.get("checked", True) is False:
                continue
            keyed[int(item["id"])] = item.get("time_slots") or []
        return keyed

    @field_validator("week_slots")
    @classmethod
    def check_weekdays(cls, value):
        for key in value:
            if not 0 <= key <= 6:
                raise ValueError(f"week_slots 星期编号非法: {key}")
        return value

    @field_serializer("week_slots")
    def dump_week_slots(self, value: Dict[int, List[TimeRange]]) -> Dict[str, Any]:
        return {str(k): [r.model_dump(by_alias=True) for r in value[k]] for k in sorted(value)}

    def slots_for(self, day: date) -> List[TimeRange]:
        return list(self.week_slots.get(weekday_id(day), []))


class FreeTemplate(_TemplateBase):
    """自由时间段模板：学员在 free_time_range 内任选开始时间"""
    time_type: Literal[2] = 2
    free_time_range: TimeRange

    @field_validator("free_time_range", mode="before")
    @classmethod
    def load_free_range(cls, value):
        return _load_json(value)


AvailabilityTemplate = Annotated[
    Union[FullTemplate, WeeklyTemplate, FreeTemplate],
    Field(discriminator="time_type"),
]

TemplateAdapter = TypeAdapter(AvailabilityTemplate)

_TEMPLATE_COLUMNS = (
    "id", "coach_id", "time_type", "time_slots", "week_slots", "free_time_range",
    "date_slots", "max_advance_days", "max_advance_nums",
)


def parse_template(data: Dict[str, Any]) -> Union[FullTemplate, WeeklyTemplate, FreeTemplate]:
    """解析模板数据，只校验当前 time_type 对应的时段字段"""
    data = dict(data)
    data["time_type"] = int(data.get("time_type") or 0)
    return TemplateAdapter.validate_python(data)


def template_from_row(row) -> Union[FullTemplate, WeeklyTemplate, FreeTemplate]:
    """从 TimeTemplate ORM 对象构建模板"""
    data = {name: getattr(row, name) for name in _TEMPLATE_COLUMNS}
    # None 交给字段默认值
    return parse_template({k: v for k, v in data.items() if v is not None})
