from .plausibility import (
    validate_metal_price,
    price_validator,
    validate_stock_values,
    validate_fx_rate,
    check_retail_plausibility,
    PriceValidation,
)


__all__ = [
    "validate_metal_price",
    "price_validator",
    "validate_stock_values",
    "validate_fx_rate",
    "check_retail_plausibility",
    "PriceValidation",
]
