"""
白银现货历史日线采集器（Stooq CSV）
数据库为空或过旧时用于补齐现货价历史，收盘价即当日美元/盎司
"""
import io
from datetime import date
from typing import List, Optional

import pandas as pd

from config import AppSettings
from data_sources.base import make_request, HttpStatusError
from data_sources.result import ErrorKind, Outcome, capture, failure, success
from database.records import SpotPriceRecord
from utils.logger import logger
from validator import validate_metal_price


SOURCE_NAME = "stooq_backfill"


def build_history_url(start: date, end: date, settings: AppSettings) -> str:
    backfill = settings.backfill
    return (
        f"{backfill.history_url}?s={backfill.symbol}"
        f"&d1={start.strftime('%Y%m%d')}&d2={end.strftime('%Y%m%d')}&i=d"
    )


def download_history_csv(url: str, settings: AppSettings) -> str:
    """
    下载日线 CSV

    Raises:
        requests.RequestException: 网络失败或非 200 响应
    """
    response = make_request(url, headers={"Accept": "text/csv,*/*"}, network=settings.network)
    if response.status_code != 200:
        raise HttpStatusError(response.status_code, url)
    return response.text


def parse_history_csv(text: str, contract: str = "XAGUSD") -> List[SpotPriceRecord]:
    """
    解析日线 CSV

    表头: Date,Open,High,Low,Close,Volume
    日期无法解析或收盘价非正数的行跳过

    Raises:
        ValueError: 内容为空或缺少 Date/Close 列（如 "No data"）
    """
    frame = pd.read_csv(io.StringIO(text))
    columns = {str(c).strip().lower(): c for c in frame.columns}
    if "date" not in columns or "close" not in columns:
        raise ValueError(f"CSV 缺少 Date/Close 列: {list(frame.columns)}")

    days = pd.to_datetime(frame[columns["date"]], errors="coerce")
    closes = pd.to_numeric(frame[columns["close"]], errors="coerce")

    records: List[SpotPriceRecord] = []
    for day, close in zip(days, closes):
        if pd.isna(day) or pd.isna(close) or close <= 0:
            continue
        records.append(SpotPriceRecord(
            date=day.date().isoformat(),
            price_usd_per_oz=float(close),
            contract=contract,
            source=SOURCE_NAME,
        ))
    return records


def fetch_spot_history(start: date, end: date, settings: Optional[AppSettings] = None) -> Outcome[List[SpotPriceRecord]]:
    """
    获取 [start, end] 区间的现货日线

    - 下载失败 -> FETCH_ERROR
    - CSV 无法解析 -> PARSE_ERROR
    - 区间内没有通过价格校验的行 -> NO_DATA
    """
    settings = settings or AppSettings()
    url = build_history_url(start, end, settings)
    logger.info(f"[现货历史] 下载 {url}")

    downloaded = capture(lambda: download_history_csv(url, settings), ErrorKind.FETCH_ERROR)
    if not downloaded.ok:
        logger.error(f"[现货历史] 下载失败: {downloaded.failure.message}")
        return downloaded

    parsed = capture(lambda: parse_history_csv(downloaded.value), ErrorKind.PARSE_ERROR)
    if not parsed.ok:
        logger.error(f"[现货历史] 解析失败: {parsed.failure.message}")
        return failure(ErrorKind.PARSE_ERROR, parsed.failure.message)

    records = []
    for record in parsed.value:
        validation = validate_metal_price(record["price_usd_per_oz"], settings.validation)
        if not validation["is_valid"]:
            logger.warning(f"[现货历史] 跳过 {record['date']}: {'; '.join(validation['errors'])}")
            continue
        records.append(record)

    if not records:
        return failure(ErrorKind.NO_DATA, f"{start.isoformat()} 至 {end.isoformat()} 没有可用的现货日线")
    return success(records)
