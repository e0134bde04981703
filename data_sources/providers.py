"""
多数据源回退编排
按优先级依次尝试各数据源，返回第一个成功且通过合理性校验的结果
"""
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from data_sources.result import ErrorKind, Outcome, failure, success
from utils.logger import logger


T = TypeVar("T")

# 校验函数签名: value -> (is_valid, 说明列表)
Validator = Callable[[Any], Tuple[bool, List[str]]]


class ProviderNotConfigured(Exception):
    """数据源缺少凭证或配置，视为静默不可用"""


# 单次尝试的状态
ATTEMPT_OK = "ok"
ATTEMPT_NOT_CONFIGURED = "not_configured"
ATTEMPT_EMPTY = "empty"
ATTEMPT_ERROR = "error"
ATTEMPT_TIMEOUT = "timeout"
ATTEMPT_INVALID = "invalid"


@dataclass
class Provider(Generic[T]):
    """具名数据源: fetch(context) -> 值 或 None"""
    name: str
    fetch: Callable[[Any], Optional[T]]


@dataclass
class ProviderAttempt:
    provider: str
    status: str
    message: Optional[str] = None
    elapsed: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FallbackResult(Generic[T]):
    """回退链执行结果，value 为 None 表示全部不可用"""
    value: Optional[T] = None
    provider: Optional[str] = None
    attempts: List[ProviderAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None

    def failure_kind(self) -> ErrorKind:
        statuses = {a.status for a in self.attempts}
        if ATTEMPT_INVALID in statuses:
            return ErrorKind.VALIDATION_ERROR
        if statuses & {ATTEMPT_ERROR, ATTEMPT_TIMEOUT}:
            return ErrorKind.FETCH_ERROR
        return ErrorKind.NO_DATA

    def summary(self) -> str:
        """各数据源尝试摘要，用于错误信息"""
        if not self.attempts:
            return "未配置任何数据源"
        parts = []
        for attempt in self.attempts:
            text = f"{attempt.provider}={attempt.status}"
            if attempt.message:
                text += f" ({attempt.message})"
            parts.append(text)
        return "; ".join(parts)

    def to_outcome(self) -> Outcome[T]:
        if self.ok:
            return success(self.value)
        return failure(self.failure_kind(), f"所有数据源均不可用: {self.summary()}")


def _call_with_timeout(fn: Callable[[], Any], timeout: Optional[float]) -> Any:
    """
    在独立线程中执行 fn，超过 timeout 秒抛出 FutureTimeoutError
    超时后不等待该线程结束
    """
    if timeout is None:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider")
    try:
        future = executor.submit(fn)
        return future.result(timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def run_with_fallback(
    providers: Sequence[Provider],
    context: Any,
    validator: Optional[Validator] = None,
    timeout: Optional[float] = 8.0,
    label: str = "",
) -> FallbackResult:
    """
    依次尝试各数据源

    Args:
        providers: 按优先级排列的数据源
        context: 传给每个数据源的上下文
        validator: 合理性校验函数，未通过的结果被记为 invalid 并继续尝试下一个
        timeout: 单个数据源调用的整体超时（秒），None 表示不限制
        label: 日志前缀

    Returns:
        FallbackResult: 不会抛出异常
    """
    prefix = f"[{label}] " if label else ""
    result: FallbackResult = FallbackResult()

    for provider in providers:
        started = time.monotonic()
        try:
            value = _call_with_timeout(lambda: provider.fetch(context), timeout)
        except ProviderNotConfigured as e:
            result.attempts.append(ProviderAttempt(provider.name, ATTEMPT_NOT_CONFIGURED, str(e) or None))
            logger.info(f"{prefix}{provider.name} 未配置，跳过")
            continue
        except FutureTimeoutError:
            elapsed = time.monotonic() - started
            result.attempts.append(
                ProviderAttempt(provider.name, ATTEMPT_TIMEOUT, f"超过 {timeout} 秒未响应", elapsed)
            )
            logger.warning(f"{prefix}{provider.name} 超时 ({elapsed:.1f}s)")
            continue
        except Exception as e:
            elapsed = time.monotonic() - started
            result.attempts.append(
                ProviderAttempt(provider.name, ATTEMPT_ERROR, f"{type(e).__name__}: {e}", elapsed)
            )
            logger.warning(f"{prefix}{provider.name} 失败: {e}")
            continue

        elapsed = time.monotonic() - started

        if value is None:
            result.attempts.append(ProviderAttempt(provider.name, ATTEMPT_EMPTY, "无数据", elapsed))
            logger.info(f"{prefix}{provider.name} 无数据")
            continue

        if validator is not None:
            is_valid, notes = validator(value)
            if not is_valid:
                result.attempts.append(
                    ProviderAttempt(provider.name, ATTEMPT_INVALID, "; ".join(notes), elapsed)
                )
                logger.error(f"{prefix}{provider.name} 校验未通过: {'; '.join(notes)}")
                continue
            if notes:
                logger.warning(f"{prefix}{provider.name} 校验警告: {'; '.join(notes)}")

        result.attempts.append(ProviderAttempt(provider.name, ATTEMPT_OK, None, elapsed))
        result.value = value
        result.provider = provider.name
        logger.info(f"{prefix}{provider.name} 成功 ({elapsed:.2f}s)")
        return result

    logger.error(f"{prefix}所有数据源均失败: {result.summary()}")
    return result


def select_providers(registry: dict, order: Sequence[str], label: str = "") -> List[Provider]:
    """
    按配置顺序从注册表中挑选数据源，未知名称记录警告后忽略
    """
    providers: List[Provider] = []
    for name in order:
        fetch = registry.get(name)
        if fetch is None:
            logger.warning(f"[{label}] 未知数据源: {name}")
            continue
        providers.append(Provider(name=name, fetch=fetch))
    return providers
