"""
单元格 / 文本数值规整工具
供库存报表解析与零售页面价格提取共用
"""
import math
import numbers
import re
from typing import Any, Iterable, Optional


# 货币金额形态：必须带两位小数，可带千分位
# 例: "35,80"  "35.80"  "1.234,56"  "1,234.56"
_PRICE_PATTERN = re.compile(r"\d{1,3}(?:[.,\s]\d{3})*[.,]\d{2}(?!\d)|\d+[.,]\d{2}(?!\d)")
_PAREN_NEGATIVE = re.compile(r"^\((.*)\)$")


def normalize_text(value: Any) -> str:
    """小写、去首尾空白、合并连续空白"""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip().lower()


def parse_numeric(value: Any) -> Optional[float]:
    """
    解析单元格数值

    - None / 空串 / NaN -> None
    - 数字原样返回
    - 字符串去掉千分位逗号与空白；"(123)" 视为 -123
    - 无法解析 -> None
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, numbers.Real):
        number = float(value)
        return None if math.isnan(number) else number

    text = re.sub(r"[,\s\u00a0]", "", str(value))
    if not text:
        return None

    negative = False
    match = _PAREN_NEGATIVE.match(text)
    if match:
        negative = True
        text = match.group(1)

    try:
        number = float(text)
    except ValueError:
        return None

    if math.isnan(number):
        return None
    return -number if negative else number


def parse_price_text(text: Any) -> Optional[float]:
    """
    从文本中提取第一个货币金额（两位小数），兼容欧式与美式千分位

    Returns:
        float 或 None（无匹配或金额非正）
    """
    if text is None:
        return None
    match = _PRICE_PATTERN.search(str(text))
    if not match:
        return None

    raw = re.sub(r"\s", "", match.group(0))
    decimal_sep = raw[-3]
    thousands_sep = "." if decimal_sep == "," else ","
    normalized = raw.replace(thousands_sep, "").replace(decimal_sep, ".")

    try:
        price = float(normalized)
    except ValueError:
        return None
    return price if price > 0 else None


def count_keyword_matches(text: Any, keywords: Iterable[str]) -> int:
    """统计 text 中出现的关键词个数（大小写不敏感）"""
    haystack = normalize_text(text)
    return sum(1 for kw in keywords if normalize_text(kw) and normalize_text(kw) in haystack)


def contains_any(text: Any, keywords: Iterable[str]) -> bool:
    """text 是否包含任一关键词"""
    return count_keyword_matches(text, keywords) > 0
