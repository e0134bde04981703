"""
合理性校验
新采集的数值在入库前需独立于数据源自身的 "成功" 状态进行校验
"""
from typing import List, Optional, Tuple, TypedDict

from config import ValidationSettings


# ======================
# 数据结构
# ======================
class PriceValidation(TypedDict):
    """价格校验结果"""
    is_valid: bool
    errors: List[str]      # 导致拒绝的问题
    warnings: List[str]    # 仅提示，不拒绝


# ======================
# 价格校验
# ======================
def validate_metal_price(price_usd_per_oz: float, ctx: ValidationSettings) -> PriceValidation:
    """
    白银价格区间校验

    超出 [price_min_usd, price_max_usd] 直接拒绝（常见原因：单位错误或误取金价），
    超出典型区间仅给出警告
    """
    errors: List[str] = []
    warnings: List[str] = []

    if price_usd_per_oz < ctx.price_min_usd:
        errors.append(
            f"价格 {price_usd_per_oz:.4f} USD/oz 低于下限 {ctx.price_min_usd}（可能是克/盎司单位错误）"
        )
    if price_usd_per_oz > ctx.price_max_usd:
        errors.append(
            f"价格 {price_usd_per_oz:.4f} USD/oz 高于上限 {ctx.price_max_usd}（可能误取金价）"
        )

    if not errors and not (ctx.price_typical_min_usd <= price_usd_per_oz <= ctx.price_typical_max_usd):
        warnings.append(
            f"价格 {price_usd_per_oz:.2f} USD/oz 超出典型区间 "
            f"[{ctx.price_typical_min_usd}, {ctx.price_typical_max_usd}]"
        )

    return PriceValidation(is_valid=not errors, errors=errors, warnings=warnings)


def price_validator(ctx: ValidationSettings, field: str = "price_usd_per_oz"):
    """
    构造供回退链使用的校验函数: record -> (is_valid, notes)
    """
    def _validate(record) -> Tuple[bool, List[str]]:
        price = record.get(field)
        if price is None:
            return False, [f"缺少字段 {field}"]
        result = validate_metal_price(float(price), ctx)
        if not result["is_valid"]:
            return False, result["errors"]
        return True, result["warnings"]

    return _validate


# ======================
# 库存校验
# ======================
def validate_stock_values(
    registered: float,
    eligible: float,
    combined: float,
    ctx: ValidationSettings,
) -> List[str]:
    """
    库存合理性校验，返回警告列表（不拒绝数据）

    - registered / eligible / combined 需在历史合理区间内
    - combined 应等于 registered + eligible（容差 combined_tolerance）
    """
    warnings: List[str] = []

    if not ctx.min_registered <= registered <= ctx.max_registered:
        warnings.append(f"Registered {registered:,.0f} oz 超出合理区间")
    if not ctx.min_eligible <= eligible <= ctx.max_eligible:
        warnings.append(f"Eligible {eligible:,.0f} oz 超出合理区间")
    if not ctx.min_combined <= combined <= ctx.max_combined:
        warnings.append(f"Combined {combined:,.0f} oz 超出合理区间")

    expected = registered + eligible
    tolerance = abs(expected) * ctx.combined_tolerance
    if abs(combined - expected) > tolerance:
        warnings.append(
            f"Combined ({combined:,.0f}) 与 Registered ({registered:,.0f}) + "
            f"Eligible ({eligible:,.0f}) 不一致"
        )

    return warnings


# ======================
# 汇率校验
# ======================
def validate_fx_rate(
    current_rate: float,
    previous_rate: Optional[float],
    ctx: ValidationSettings,
) -> Tuple[bool, str]:
    """
    汇率校验：必须为正，单日变动不超过 fx_daily_change_limit

    Returns:
        (is_valid, note)
    """
    if current_rate is None or current_rate <= 0:
        return False, f"汇率必须为正数 (当前={current_rate})"

    # 冷启动处理
    if previous_rate is None or previous_rate <= 0:
        return True, "无历史汇率数据，跳过变动校验"

    change = (current_rate - previous_rate) / previous_rate
    change_pct = change * 100
    limit_pct = ctx.fx_daily_change_limit * 100

    is_valid = abs(change) <= ctx.fx_daily_change_limit

    return is_valid, (
        f"前日={previous_rate:.4f}, "
        f"当日={current_rate:.4f}, "
        f"变动={change_pct:+.2f}%, "
        f"限制=±{limit_pct:.0f}%"
    )


# ======================
# 零售价校验
# ======================
def check_retail_plausibility(
    retail_price: float,
    spot_in_quote_currency: float,
    ctx: ValidationSettings,
) -> Tuple[bool, Optional[str]]:
    """
    零售价与现货价对比

    spot_in_quote_currency 为换算到报价币种、并乘以纯银盎司数后的现货价值。
    低于现货 95% 说明解析错误（零售不可能低于现货），高于 20 倍同样视为解析错误。
    """
    min_price = spot_in_quote_currency * ctx.retail_min_spot_ratio
    max_price = spot_in_quote_currency * ctx.retail_max_spot_ratio

    if retail_price < min_price:
        return False, (
            f"价格 {retail_price:.2f} 过低 (现货: {spot_in_quote_currency:.2f}, 下限: {min_price:.2f})"
        )
    if retail_price > max_price:
        return False, (
            f"价格 {retail_price:.2f} 过高 (现货: {spot_in_quote_currency:.2f}, 上限: {max_price:.2f})"
        )
    return True, None
