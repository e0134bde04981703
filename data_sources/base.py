import time
from typing import Optional, Dict
import requests
from requests.exceptions import RequestException

from config import NetworkSettings
from utils.logger import logger


DEFAULT_NETWORK = NetworkSettings()


class HttpStatusError(RequestException):
    """非 2xx 响应（携带状态码，便于归类与审计）"""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code}: {url}")
        self.status_code = status_code
        self.url = url


def backoff_delay(attempt: int, network: NetworkSettings) -> float:
    """第 attempt 次失败后的等待秒数：指数退避，上限 retry_max_interval"""
    return min(network.retry_interval * (2 ** (attempt - 1)), network.retry_max_interval)


def make_request(
    url: str,
    method: str = "GET",
    headers: Optional[Dict] = None,
    params: Optional[Dict] = None,
    data: Optional[Dict] = None,
    timeout: Optional[float] = None,
    network: Optional[NetworkSettings] = None,
    retry_times: Optional[int] = None,
    allow_redirects: bool = True,
) -> requests.Response:
    """
    发送 HTTP 请求，自动处理重试逻辑

    Args:
        url: 请求 URL
        method: 请求方法 (GET/POST/HEAD)
        headers: 请求头
        params: URL 参数 (GET)
        data: Body 数据 (POST, form-urlencoded)
        timeout: 超时时间 (秒)，如果不指定则使用配置中的默认值
        network: 网络配置（重试次数、退避间隔、超时）
        retry_times: 覆盖配置中的重试次数

    Returns:
        requests.Response: 响应对象（不检查状态码）

    Raises:
        requests.RequestException: 如果所有重试都失败
    """
    network = network or DEFAULT_NETWORK
    attempts = retry_times if retry_times is not None else network.retry_times
    attempts = max(attempts, 1)
    current_timeout = timeout if timeout is not None else network.timeout

    request_headers = {"User-Agent": network.user_agent}
    if headers:
        request_headers.update(headers)

    method = method.upper()
    if method not in ("GET", "POST", "HEAD"):
        raise ValueError(f"不支持的方法: {method}")

    last_exception: Optional[RequestException] = None

    for attempt in range(1, attempts + 1):
        try:
            return requests.request(
                method,
                url,
                headers=request_headers,
                params=params,
                data=data,
                timeout=current_timeout,
                allow_redirects=allow_redirects,
            )
        except RequestException as e:
            last_exception = e
            logger.warning(f"请求失败 ({attempt}/{attempts}): {url} - {str(e)}")

            if attempt < attempts:
                time.sleep(backoff_delay(attempt, network))

    # 所有重试都失败
    if last_exception:
        raise last_exception
    raise RequestException(f"请求失败，重试 {attempts} 次")


def fetch_json(
    url: str,
    method: str = "GET",
    headers: Optional[Dict] = None,
    params: Optional[Dict] = None,
    data: Optional[Dict] = None,
    network: Optional[NetworkSettings] = None,
):
    """
    请求并解析 JSON；非 200 响应抛出 HttpStatusError
    """
    response = make_request(url, method=method, headers=headers, params=params, data=data, network=network)
    if response.status_code != 200:
        raise HttpStatusError(response.status_code, url)
    return response.json()
