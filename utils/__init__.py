from .numeric import (
    normalize_text,
    parse_numeric,
    parse_price_text,
    count_keyword_matches,
    contains_any,
)
from .units import (
    TROY_OUNCE_TO_GRAM,
    cny_per_gram_to_usd_per_oz,
    usd_per_oz_to_cny_per_gram,
    per_kg_to_per_gram,
    invert_rate,
)
from .market_date import to_market_date


__all__ = [
    "normalize_text",
    "parse_numeric",
    "parse_price_text",
    "count_keyword_matches",
    "contains_any",
    "TROY_OUNCE_TO_GRAM",
    "cny_per_gram_to_usd_per_oz",
    "usd_per_oz_to_cny_per_gram",
    "per_kg_to_per_gram",
    "invert_rate",
    "to_market_date",
]
