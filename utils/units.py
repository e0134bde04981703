"""
单位换算
"""

TROY_OUNCE_TO_GRAM = 31.1034768  # 金衡盎司转克


def cny_per_gram_to_usd_per_oz(cny_per_gram: float, usd_cny: float) -> float:
    """人民币/克 -> 美元/盎司: (元/克 × 31.1035) / 汇率"""
    if usd_cny <= 0:
        raise ValueError(f"汇率必须为正数: {usd_cny}")
    return (cny_per_gram * TROY_OUNCE_TO_GRAM) / usd_cny


def usd_per_oz_to_cny_per_gram(usd_per_oz: float, usd_cny: float) -> float:
    """美元/盎司 -> 人民币/克: (美元/盎司 × 汇率) / 31.1035"""
    if usd_cny <= 0:
        raise ValueError(f"汇率必须为正数: {usd_cny}")
    return (usd_per_oz * usd_cny) / TROY_OUNCE_TO_GRAM


def per_kg_to_per_gram(price_per_kg: float) -> float:
    """元/千克 -> 元/克"""
    return price_per_kg / 1000.0


def invert_rate(rate: float) -> float:
    """
    倒数换算，用于 "每单位货币可换多少盎司" -> "每盎司价格"
    """
    if rate is None or rate <= 0:
        raise ValueError(f"无法对非正数取倒数: {rate}")
    return 1.0 / rate
