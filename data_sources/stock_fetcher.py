"""
交易所白银库存采集器
下载库存报表，归档原始文件后解析为库存快照
"""
import hashlib
from pathlib import Path
from typing import Optional
from datetime import date

from config import AppSettings
from data_sources.base import make_request, HttpStatusError
from data_sources.result import ErrorKind, Outcome, capture, failure, success
from data_sources.stock_parser import detect_workbook_format, load_workbook, parse_stock_workbook, ParsedStockReport
from database.records import StockSnapshotRecord
from utils.logger import logger


SOURCE_NAME = "cme_xls"


def download_stock_report(settings: AppSettings) -> bytes:
    """
    下载库存报表原始文件

    Raises:
        requests.RequestException: 网络失败或非 200 响应
    """
    url = settings.stock_report.url
    headers = {"Accept": "application/vnd.ms-excel,application/octet-stream,*/*"}
    response = make_request(url, headers=headers, timeout=max(settings.network.timeout, 30), network=settings.network)
    if response.status_code != 200:
        raise HttpStatusError(response.status_code, url)
    if not response.content:
        raise ValueError("报表文件为空")
    return response.content


def archive_raw_report(content: bytes, target_date: date, raw_dir: Optional[str]) -> Optional[Path]:
    """
    保存原始报表到 raw_dir/silver_stocks_<日期>.<xls|xlsx>，归档失败只记录日志

    扩展名按文件头判断，无法识别的内容（如维护页面）保存为 .bin
    """
    if not raw_dir:
        return None
    suffix = detect_workbook_format(content) or "bin"
    try:
        directory = Path(raw_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"silver_stocks_{target_date.isoformat()}.{suffix}"
        path.write_bytes(content)
        logger.info(f"[库存采集] 原始文件已保存: {path}")
        return path
    except OSError as e:
        logger.warning(f"[库存采集] 原始文件归档失败: {e}")
        return None


def build_snapshot(
    parsed: ParsedStockReport,
    target_date: date,
    file_hash: Optional[str],
    source_url: Optional[str],
) -> StockSnapshotRecord:
    """解析结果 -> 库存快照（日环比与占比由对账阶段补充）"""
    return StockSnapshotRecord(
        date=target_date.isoformat(),
        registered=parsed.registered,
        eligible=parsed.eligible,
        combined=parsed.combined,
        delta_registered=None,
        delta_eligible=None,
        delta_combined=None,
        registered_percent=None,
        is_provisional=parsed.is_provisional,
        warnings=parsed.warnings,
        sheet_name=parsed.sheet_name,
        file_hash=file_hash,
        source_url=source_url,
        source=SOURCE_NAME,
        warehouses=parsed.warehouses,
    )


def fetch_stock_snapshot(target_date: date, settings: Optional[AppSettings] = None) -> Outcome[StockSnapshotRecord]:
    """
    获取库存快照

    - 下载失败 -> FETCH_ERROR
    - 文件无法读取 -> PARSE_ERROR
    - 找不到工作表 / 表头 / 合计 -> NO_DATA
    """
    settings = settings or AppSettings()
    url = settings.stock_report.url

    downloaded = capture(lambda: download_stock_report(settings), ErrorKind.FETCH_ERROR)
    if not downloaded.ok:
        logger.error(f"[库存采集] 下载失败: {downloaded.failure.message}")
        return downloaded

    content = downloaded.value
    file_hash = hashlib.md5(content).hexdigest()
    archive_raw_report(content, target_date, settings.stock_report.raw_dir)

    workbook = capture(lambda: load_workbook(content), ErrorKind.PARSE_ERROR)
    if not workbook.ok:
        logger.error(f"[库存采集] 文件读取失败: {workbook.failure.message}")
        return failure(ErrorKind.PARSE_ERROR, workbook.failure.message)

    parsed = parse_stock_workbook(workbook.value, settings.validation)
    if parsed is None:
        return failure(ErrorKind.NO_DATA, "报表中未找到库存工作表、表头或有效合计")

    return success(build_snapshot(parsed, target_date, file_hash, url))
