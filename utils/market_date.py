"""
市场日期归一化
所有实体均以参考时区下的自然日为键
"""
from datetime import date, datetime
from typing import Union, Optional
from zoneinfo import ZoneInfo


DateLike = Union[None, str, date, datetime]


def to_market_date(value: DateLike = None, tz_name: str = "Europe/Berlin") -> date:
    """
    将任意日期输入归一化为参考时区下的市场日

    - None: 参考时区当前日期
    - date: 原样返回
    - 带时区的 datetime: 先转换到参考时区再取日期
    - 无时区的 datetime: 视为参考时区本地时间
    - str: ISO 格式 (YYYY-MM-DD 或完整时间戳)
    """
    tz = ZoneInfo(tz_name)

    if value is None:
        return datetime.now(tz).date()

    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        value = datetime.fromisoformat(text.replace("Z", "+00:00"))

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()

    if isinstance(value, date):
        return value

    raise TypeError(f"不支持的日期类型: {type(value).__name__}")


def parse_date(value: Optional[str]) -> Optional[date]:
    """YYYY-MM-DD -> date；None 原样返回"""
    if value is None:
        return None
    return datetime.strptime(value, "%Y-%m-%d").date()
