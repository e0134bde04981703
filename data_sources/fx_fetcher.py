"""
汇率采集器
按配置顺序尝试 exchangerate.host / frankfurter / 欧洲央行参考汇率 / 中国货币网中间价
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, TypedDict
from datetime import date

from bs4 import BeautifulSoup

from config import AppSettings
from data_sources.base import make_request, fetch_json, HttpStatusError
from data_sources.providers import ProviderNotConfigured, run_with_fallback, select_providers
from data_sources.result import Outcome, failure, success
from database.records import FxRateRecord
from utils.logger import logger
from validator import validate_fx_rate


EXCHANGERATE_HOST_URL = "https://api.exchangerate.host/latest"
FRANKFURTER_URL = "https://api.frankfurter.app"
ECB_DAILY_URL = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
CHINAMONEY_URL = "https://www.chinamoney.com.cn/ags/ms/cm-u-bk-ccpr/CcprHisNew.do"


# ======================
# 数据结构
# ======================
@dataclass
class FxContext:
    """汇率查询上下文：1 base = ? quote"""
    target_date: date
    settings: AppSettings = field(default_factory=AppSettings)
    base: str = "USD"
    quote: str = "CNY"

    @property
    def pair(self) -> str:
        return f"{self.base}/{self.quote}"


class FxQuote(TypedDict):
    """任意货币对的汇率"""
    date: str
    base: str
    quote: str
    rate: float
    source: str


# ======================
# 各数据源
# ======================
def _from_exchangerate_host(ctx: FxContext) -> Optional[float]:
    """exchangerate.host: {"rates": {"CNY": 7.1}} 或 {"quotes": {"USDCNY": 7.1}}"""
    params: Dict[str, Any] = {"base": ctx.base, "symbols": ctx.quote}
    access_key = ctx.settings.credentials.exchangerate_host_key
    if access_key:
        params["access_key"] = access_key

    data = fetch_json(EXCHANGERATE_HOST_URL, params=params, network=ctx.settings.network)
    rates = data.get("rates") or {}
    if ctx.quote in rates:
        return float(rates[ctx.quote])
    quotes = data.get("quotes") or {}
    if f"{ctx.base}{ctx.quote}" in quotes:
        return float(quotes[f"{ctx.base}{ctx.quote}"])
    return None


def _from_frankfurter(ctx: FxContext) -> Optional[float]:
    """frankfurter.app：按日期查询，非工作日返回之前最近一个工作日"""
    url = f"{FRANKFURTER_URL}/{ctx.target_date.isoformat()}"
    data = fetch_json(url, params={"from": ctx.base, "to": ctx.quote}, network=ctx.settings.network)
    rate = (data.get("rates") or {}).get(ctx.quote)
    return float(rate) if rate is not None else None


def parse_ecb_rates(xml_text: str) -> Dict[str, float]:
    """
    解析欧洲央行每日参考汇率 XML

    <Cube currency="USD" rate="1.0856"/> -> {"USD": 1.0856, ..., "EUR": 1.0}
    """
    soup = BeautifulSoup(xml_text, "lxml-xml")
    rates: Dict[str, float] = {"EUR": 1.0}
    for cube in soup.find_all("Cube"):
        currency = cube.get("currency")
        rate = cube.get("rate")
        if currency and rate:
            try:
                rates[currency.upper()] = float(rate)
            except ValueError:
                continue
    return rates


def _from_ecb(ctx: FxContext) -> Optional[float]:
    """欧洲央行以 EUR 为基准，交叉计算 base/quote"""
    response = make_request(ECB_DAILY_URL, network=ctx.settings.network)
    if response.status_code != 200:
        raise HttpStatusError(response.status_code, ECB_DAILY_URL)

    rates = parse_ecb_rates(response.text)
    if ctx.base not in rates or ctx.quote not in rates:
        return None
    # base/quote = (EUR/quote) / (EUR/base)
    return rates[ctx.quote] / rates[ctx.base]


def _from_chinamoney(ctx: FxContext) -> Optional[float]:
    """
    通过中国货币网 API 获取人民币中间价（仅支持 xxx/CNY）
    """
    if ctx.quote != "CNY":
        raise ProviderNotConfigured(f"中国货币网不提供 {ctx.pair}")

    headers = {
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
        "Origin": "https://www.chinamoney.com.cn",
        "Referer": "https://www.chinamoney.com.cn/chinese/bkccpr/",
        "X-Requested-With": "XMLHttpRequest",
    }
    date_str = ctx.target_date.isoformat()
    # 请求参数 (POST form data)
    form_data = {
        "startDate": date_str,
        "endDate": date_str,
        "currency": ctx.pair,
        "pageNum": 1,
        "pageSize": 1,
    }

    data = fetch_json(CHINAMONEY_URL, method="POST", headers=headers, data=form_data, network=ctx.settings.network)
    if not data:
        return None

    # API 返回格式：
    # {
    #   "data": {"searchlist": ["USD/CNY", "EUR/CNY", ...]},
    #   "records": [{"date": "2025-12-01", "values": ["7.1088", ...]}]
    # }
    records = data.get("records") or []
    if not records:
        return None

    record = records[0]
    if record.get("date", "") != date_str:
        logger.info(f"[汇率采集] chinamoney 日期不匹配 (API返回: {record.get('date')})")
        return None

    currency_list = (data.get("data") or {}).get("searchlist", [])
    rate_map = dict(zip(currency_list, record.get("values", [])))
    if ctx.pair not in rate_map:
        return None
    return float(rate_map[ctx.pair])


FX_PROVIDERS = {
    "exchangerate_host": _from_exchangerate_host,
    "frankfurter": _from_frankfurter,
    "ecb": _from_ecb,
    "chinamoney": _from_chinamoney,
}


def _positive_rate(rate: float) -> Tuple[bool, List[str]]:
    if rate is None or rate <= 0:
        return False, [f"汇率必须为正数 (当前={rate})"]
    return True, []


# ======================
# 对外接口
# ======================
def fetch_fx_quote(
    target_date: date,
    quote: str,
    settings: Optional[AppSettings] = None,
    base: str = "USD",
) -> Outcome[FxQuote]:
    """
    获取 1 base = ? quote

    Returns:
        Outcome[FxQuote]: 全部数据源失败时为失败结果，不抛出异常
    """
    settings = settings or AppSettings()
    base, quote = base.upper(), quote.upper()
    if base == quote:
        return success(FxQuote(date=target_date.isoformat(), base=base, quote=quote, rate=1.0, source="identity"))

    ctx = FxContext(target_date=target_date, settings=settings, base=base, quote=quote)
    providers = select_providers(FX_PROVIDERS, settings.providers.fx, label="汇率采集")
    result = run_with_fallback(
        providers,
        ctx,
        validator=_positive_rate,
        timeout=settings.network.provider_timeout,
        label=f"汇率采集 {ctx.pair}",
    )
    return result.to_outcome().map(
        lambda rate: FxQuote(
            date=target_date.isoformat(),
            base=base,
            quote=quote,
            rate=round(float(rate), 6),
            source=result.provider,
        )
    )


def fetch_usd_cny_rate(
    target_date: date,
    settings: Optional[AppSettings] = None,
    previous_rate: Optional[float] = None,
) -> Outcome[FxRateRecord]:
    """
    获取 USD/CNY 汇率

    Args:
        target_date: 目标日期
        settings: 应用配置
        previous_rate: 前一交易日汇率，超出单日变动限制时仅记录警告
    """
    settings = settings or AppSettings()
    outcome = fetch_fx_quote(target_date, "CNY", settings)
    if not outcome.ok:
        return failure(outcome.failure.kind, outcome.failure.message)

    quote = outcome.value
    is_valid, note = validate_fx_rate(quote["rate"], previous_rate, settings.validation)
    if not is_valid:
        logger.warning(f"[汇率采集] USD/CNY 单日变动超限: {note}")

    return success(FxRateRecord(date=quote["date"], usd_cny=quote["rate"], source=quote["source"]))
