"""
采集结果类型
每个采集器都返回结构化结果（成功值 | 失败类别），异常不会穿透采集器边界
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from requests.exceptions import RequestException


T = TypeVar("T")
U = TypeVar("U")


class ErrorKind(str, Enum):
    """失败类别"""
    NO_DATA = "NO_DATA"                      # 数据源有响应但无可用数据
    FETCH_ERROR = "FETCH_ERROR"              # 网络 / HTTP 失败
    PARSE_ERROR = "PARSE_ERROR"              # 文档 / HTML 结构无法识别
    VALIDATION_ERROR = "VALIDATION_ERROR"    # 合理性校验未通过
    DEPENDENCY_FAILED = "DEPENDENCY_FAILED"  # 派生计算缺少必需输入
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"  # 写库失败


class SourceStatus(str, Enum):
    """单个数据源在一次运行中的最终状态"""
    LIVE = "live"
    STALE = "stale-fallback"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    http_status: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """成功值或结构化失败，二者恰有其一"""
    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def map(self, fn: Callable[[T], U]) -> "Outcome[U]":
        if not self.ok:
            return Outcome(failure=self.failure)
        return Outcome(value=fn(self.value))

    def and_then(self, fn: Callable[[T], "Outcome[U]"]) -> "Outcome[U]":
        if not self.ok:
            return Outcome(failure=self.failure)
        return fn(self.value)

    def or_else(self, fn: Callable[[Failure], "Outcome[T]"]) -> "Outcome[T]":
        if self.ok:
            return self
        return fn(self.failure)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default


def success(value: T) -> Outcome[T]:
    return Outcome(value=value)


def failure(kind: ErrorKind, message: str, http_status: Optional[int] = None) -> Outcome:
    return Outcome(failure=Failure(kind=kind, message=message, http_status=http_status))


def capture(fn: Callable[[], T], kind: ErrorKind = ErrorKind.FETCH_ERROR) -> Outcome[T]:
    """
    执行 fn 并把异常转换为失败结果

    网络异常统一归为 FETCH_ERROR，其余异常使用 kind
    """
    try:
        return success(fn())
    except RequestException as e:
        return failure(ErrorKind.FETCH_ERROR, f"网络请求失败: {e}")
    except Exception as e:
        return failure(kind, f"{type(e).__name__}: {e}")
