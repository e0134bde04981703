"""
交易所白银库存报表解析
报表版式不固定（工作表名、列顺序随发布变化），按可插拔的启发式规则依次定位
"""
import io
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from config import ValidationSettings
from database.records import WarehouseRecord
from utils.logger import logger
from utils.numeric import normalize_text, parse_numeric
from validator import validate_stock_values


Rows = List[List[Any]]
Workbook = Dict[str, Rows]

# 工作表识别关键词
SHEET_KEYWORDS = ("silver", "stock", "registered", "eligible")

# 表头各列的识别关键词（按顺序匹配，每个单元格只归入第一个命中的类别）
HEADER_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "warehouse": ("warehouse", "depository", "name", "location"),
    "registered": ("registered",),
    "eligible": ("eligible",),
    "total": ("total", "combined"),
    "deposits": ("deposit", "receipts", "received"),
    "withdrawals": ("withdrawal", "withdrawn", "shipped"),
    "adjustments": ("adjustment", "adjust"),
}

SHEET_SCAN_ROWS = 10
HEADER_SCAN_ROWS = 20

WAREHOUSE_SUM_WARNING = "未找到 TOTAL 行 (computed from warehouse sum)"


@dataclass
class ParsedStockReport:
    """解析结果"""
    registered: float
    eligible: float
    combined: float
    sheet_name: str
    layout: str
    header_map: Dict[str, int]
    rows_parsed: int
    warehouses: List[WarehouseRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    validation_warnings: List[str] = field(default_factory=list)

    @property
    def is_provisional(self) -> bool:
        """存在合理性校验警告时，快照仍入库但标记为临时"""
        return bool(self.validation_warnings)


# ======================
# 读取工作簿
# ======================
def detect_workbook_format(content: bytes) -> Optional[str]:
    """按文件头识别表格格式: xls | xlsx，无法识别返回 None"""
    if content[:4] == b"\xd0\xcf\x11\xe0":
        return "xls"
    if content[:2] == b"PK":
        return "xlsx"
    return None


def load_workbook(content: bytes) -> Workbook:
    """
    读取全部工作表为行列表（空单元格为 None）

    - OLE2 (.xls) 使用 xlrd
    - OOXML (.xlsx) 使用 openpyxl
    """
    engines = {"xls": "xlrd", "xlsx": "openpyxl"}
    engine = engines.get(detect_workbook_format(content))
    if engine is None:
        raise ValueError("无法识别的表格文件格式")

    sheets = pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, engine=engine)
    return {str(name): _frame_rows(df) for name, df in sheets.items()}


def _frame_rows(df: pd.DataFrame) -> Rows:
    frame = df.astype(object).where(pd.notna(df), None)
    return frame.values.tolist()


def _cell(row: Sequence[Any], idx: Optional[int]) -> Any:
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


# ======================
# 工作表定位
# ======================
SheetMatcher = Callable[[str, Rows], bool]


def match_sheet_name(name: str, rows: Rows) -> bool:
    """工作表名包含任一关键词"""
    name_norm = normalize_text(name)
    return any(kw in name_norm for kw in SHEET_KEYWORDS)


def match_sheet_content(name: str, rows: Rows) -> bool:
    """前 10 行内出现至少 2 个关键词"""
    cells = [normalize_text(_cell_text(c)) for row in rows[:SHEET_SCAN_ROWS] for c in row]
    hits = sum(1 for kw in SHEET_KEYWORDS if any(kw in cell for cell in cells))
    return hits >= 2


SHEET_MATCHERS: List[SheetMatcher] = [match_sheet_name, match_sheet_content]


def find_stock_sheet(workbook: Workbook, matchers: Sequence[SheetMatcher] = SHEET_MATCHERS) -> Optional[str]:
    """
    依次用各规则匹配工作表，全部未命中时退回第一个工作表
    """
    for matcher in matchers:
        for name, rows in workbook.items():
            if matcher(name, rows):
                return name
    return next(iter(workbook), None)


# ======================
# 表头定位
# ======================
def find_header_row(rows: Rows, max_rows: int = HEADER_SCAN_ROWS) -> Optional[Tuple[int, Dict[str, int]]]:
    """
    扫描前 max_rows 行，返回第一个同时包含 registered 与 eligible 列的行

    Returns:
        (行号, {类别: 列号}) 或 None
    """
    for i, row in enumerate(rows[:max_rows]):
        if not row or len(row) < 2:
            continue

        column_map: Dict[str, int] = {}
        for j, value in enumerate(row):
            cell_norm = normalize_text(_cell_text(value))
            if not cell_norm:
                continue
            for category, keywords in HEADER_KEYWORDS.items():
                if any(kw in cell_norm for kw in keywords):
                    column_map.setdefault(category, j)
                    break

        if "registered" in column_map and "eligible" in column_map:
            return i, column_map
    return None


# ======================
# 版式一：按列排布（每行一个仓库）
# ======================
def parse_columnar_layout(rows: Rows) -> Optional[Dict[str, Any]]:
    header = find_header_row(rows)
    if header is None:
        return None
    header_idx, column_map = header
    label_idx = column_map.get("warehouse", 0)

    warehouses: List[WarehouseRecord] = []
    total_row: Optional[Tuple[float, float, float]] = None
    grand_found = False
    rows_parsed = 0

    for row in rows[header_idx + 1:]:
        if not row or len(row) < 2:
            continue

        name = _cell_text(_cell(row, label_idx))
        name_norm = normalize_text(name)
        # 跳过空行与重复表头
        if len(name_norm) < 3:
            continue
        if "warehouse" in name_norm or "depository" in name_norm:
            continue

        registered = parse_numeric(_cell(row, column_map["registered"]))
        eligible = parse_numeric(_cell(row, column_map["eligible"]))
        if registered is None or eligible is None:
            continue

        if "total" in name_norm or "grand" in name_norm:
            is_grand = "grand" in name_norm
            rows_parsed += 1
            if grand_found and not is_grand:
                continue
            combined = parse_numeric(_cell(row, column_map.get("total"))) or (registered + eligible)
            total_row = (registered, eligible, combined)
            grand_found = grand_found or is_grand
            continue

        if registered > 0 or eligible > 0:
            warehouses.append(WarehouseRecord(
                warehouse_name=name,
                registered=registered,
                eligible=eligible,
                deposits=parse_numeric(_cell(row, column_map.get("deposits"))),
                withdrawals=parse_numeric(_cell(row, column_map.get("withdrawals"))),
                adjustments=parse_numeric(_cell(row, column_map.get("adjustments"))),
            ))
            rows_parsed += 1

    return {
        "header_map": column_map,
        "warehouses": warehouses,
        "totals": total_row,
        "rows_parsed": rows_parsed,
    }


# ======================
# 版式二：按仓库分块（仓库名行 + Registered / Eligible / Total 行）
# ======================
def _find_block_header(rows: Rows) -> Optional[Tuple[int, Dict[str, int]]]:
    for i, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        cells = [normalize_text(_cell_text(c)) for c in row]
        if not any("depository" in c for c in cells):
            continue
        column_map: Dict[str, int] = {}
        for j, cell in enumerate(cells):
            if "total today" in cell:
                column_map["today"] = j
            elif "received" in cell or "deposit" in cell:
                column_map.setdefault("deposits", j)
            elif "withdrawn" in cell or "withdrawal" in cell:
                column_map.setdefault("withdrawals", j)
            elif "adjust" in cell:
                column_map.setdefault("adjustments", j)
        return i, column_map
    return None


def _today_value(row: Sequence[Any], column_map: Dict[str, int]) -> Optional[float]:
    """TOTAL TODAY 列；未识别时取行内最后一个数值"""
    if "today" in column_map:
        return parse_numeric(_cell(row, column_map["today"]))
    numbers = [parse_numeric(c) for c in row[1:]]
    numbers = [n for n in numbers if n is not None]
    return numbers[-1] if numbers else None


def parse_block_layout(rows: Rows) -> Optional[Dict[str, Any]]:
    header = _find_block_header(rows)
    if header is None:
        return None
    header_idx, column_map = header

    blocks: Dict[str, Dict[str, Optional[float]]] = {}
    current: Optional[str] = None
    totals: Dict[str, float] = {}
    rows_parsed = 0

    for row in rows[header_idx + 1:]:
        label = _cell_text(_cell(row, 0))
        label_norm = normalize_text(label)
        if not label_norm or label_norm.startswith("-") or label_norm.startswith("="):
            continue

        value = _today_value(row, column_map)

        if label_norm.startswith("total registered"):
            if value is not None:
                totals["registered"] = value
            continue
        if label_norm.startswith("total eligible"):
            if value is not None:
                totals["eligible"] = value
            continue
        if "combined total" in label_norm or "grand total" in label_norm:
            if value is not None:
                totals["combined"] = value
            continue

        if value is None:
            # 无数值的行视为新仓库名
            current = label
            blocks.setdefault(current, {"registered": None, "eligible": None,
                                        "deposits": None, "withdrawals": None, "adjustments": None})
            continue

        if current is None:
            continue

        block = blocks[current]
        if label_norm.startswith("registered") or label_norm.startswith("eligible"):
            category = "registered" if label_norm.startswith("registered") else "eligible"
            block[category] = value
            for flow in ("deposits", "withdrawals", "adjustments"):
                amount = parse_numeric(_cell(row, column_map.get(flow)))
                if amount is not None:
                    block[flow] = (block[flow] or 0.0) + amount
            rows_parsed += 1

    warehouses = [
        WarehouseRecord(
            warehouse_name=name,
            registered=data["registered"] or 0.0,
            eligible=data["eligible"] or 0.0,
            deposits=data["deposits"],
            withdrawals=data["withdrawals"],
            adjustments=data["adjustments"],
        )
        for name, data in blocks.items()
        if data["registered"] is not None or data["eligible"] is not None
    ]

    total_row = None
    if "registered" in totals and "eligible" in totals:
        combined = totals.get("combined") or totals["registered"] + totals["eligible"]
        total_row = (totals["registered"], totals["eligible"], combined)

    return {
        "header_map": column_map,
        "warehouses": warehouses,
        "totals": total_row,
        "rows_parsed": rows_parsed,
    }


LayoutParser = Callable[[Rows], Optional[Dict[str, Any]]]

LAYOUT_PARSERS: List[Tuple[str, LayoutParser]] = [
    ("columnar", parse_columnar_layout),
    ("block", parse_block_layout),
]


# ======================
# 对外接口
# ======================
def parse_stock_workbook(
    workbook: Workbook,
    validation: Optional[ValidationSettings] = None,
    layouts: Sequence[Tuple[str, LayoutParser]] = LAYOUT_PARSERS,
) -> Optional[ParsedStockReport]:
    """
    解析库存报表

    Returns:
        ParsedStockReport；找不到工作表、表头或有效合计时返回 None
    """
    validation = validation or ValidationSettings()

    sheet_name = find_stock_sheet(workbook)
    if sheet_name is None:
        logger.error("[库存采集] 工作簿中没有工作表")
        return None
    rows = workbook[sheet_name]

    parsed = None
    layout_name = ""
    for layout_name, parser in layouts:
        parsed = parser(rows)
        if parsed is not None and (parsed["totals"] or parsed["warehouses"]):
            break
        parsed = None

    if parsed is None:
        logger.error(f"[库存采集] 工作表 {sheet_name} 中未找到 Registered/Eligible 表头")
        return None

    warnings: List[str] = []
    warehouses = parsed["warehouses"]

    if parsed["totals"] is not None:
        registered, eligible, combined = parsed["totals"]
    else:
        registered = sum(w["registered"] for w in warehouses)
        eligible = sum(w["eligible"] for w in warehouses)
        combined = registered + eligible
        warnings.append(WAREHOUSE_SUM_WARNING)

    if not combined:
        logger.error("[库存采集] 未解析到有效合计")
        return None

    validation_warnings = validate_stock_values(registered, eligible, combined, validation)
    if validation_warnings:
        logger.warning(f"[库存采集] 校验警告: {'; '.join(validation_warnings)}")

    logger.info(
        f"[库存采集] 解析完成 ({sheet_name}, {layout_name}): "
        f"Registered={registered:,.0f} oz, Eligible={eligible:,.0f} oz"
    )

    return ParsedStockReport(
        registered=registered,
        eligible=eligible,
        combined=combined,
        sheet_name=sheet_name,
        layout=layout_name,
        header_map=parsed["header_map"],
        rows_parsed=parsed["rows_parsed"],
        warehouses=warehouses,
        warnings=warnings + validation_warnings,
        validation_warnings=validation_warnings,
    )
