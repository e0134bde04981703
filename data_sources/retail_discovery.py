"""
零售商品 URL 发现与价格提取
URL 按策略顺序发现（直接地址 -> 站内搜索 -> 分类浏览），每个候选地址都需通过校验
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from bs4 import BeautifulSoup
from requests.exceptions import RequestException

from config import NetworkSettings
from data_sources.base import make_request
from data_sources.retail_config import (
    RetailProvider,
    RetailProduct,
    DIRECT_URL,
    SITE_SEARCH,
    CATEGORY_BROWSE,
)
from utils.logger import logger
from utils.numeric import count_keyword_matches, parse_price_text


MIN_KEYWORD_MATCHES = 2
HEAD_TIMEOUT = 5
EXCERPT_LIMIT = 500

# 结构化元数据（优先于配置的选择器）
METADATA_SELECTORS = (
    'meta[property="product:price:amount"]',
    'meta[itemprop="price"]',
    'meta[property="og:price:amount"]',
)

_PLAIN_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_ATTRIBUTE_SELECTOR = re.compile(r"\[([\w-]+)(?:[~|^$*]?=[^\]]*)?\]$")


@dataclass
class DiscoveryResult:
    url: Optional[str]
    strategy: str
    attempted_urls: List[str] = field(default_factory=list)
    http_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.url is not None


@dataclass
class PriceExtraction:
    price: Optional[float]
    excerpt: str = ""
    method: Optional[str] = None               # metadata | selector | json-ld


# ======================
# URL 校验
# ======================
def page_matches_product(html: str, product: RetailProduct) -> bool:
    """页面正文至少包含 2 个产品关键词"""
    text = BeautifulSoup(html, "lxml").get_text(" ")
    return count_keyword_matches(text, product.matcher.keywords) >= MIN_KEYWORD_MATCHES


def validate_url(
    url: str,
    provider: RetailProvider,
    product: RetailProduct,
    network: Optional[NetworkSettings] = None,
) -> Tuple[bool, Optional[int]]:
    """
    校验候选地址

    - HEAD 2xx: 通过
    - HEAD 404/410: 不存在
    - 其他状态（403、405、5xx 等）: 完整 GET 后检查产品关键词

    Returns:
        (是否通过, 最后一次 HTTP 状态码)
    """
    head = make_request(
        url,
        method="HEAD",
        headers=provider.headers,
        timeout=HEAD_TIMEOUT,
        network=network,
        retry_times=1,
    )
    if head.ok:
        return True, head.status_code
    if head.status_code in (404, 410):
        return False, head.status_code

    response = make_request(url, headers=provider.headers, network=network)
    if not response.ok:
        return False, response.status_code
    return page_matches_product(response.text, product), response.status_code


def find_product_links(html: str, page_url: str, provider: RetailProvider, product: RetailProduct) -> List[str]:
    """
    在搜索结果 / 分类列表中查找链接文本命中至少 2 个关键词的商品链接

    按选择器顺序查找，第一个有结果的选择器生效
    """
    soup = BeautifulSoup(html, "lxml")
    for selector in provider.link_selectors:
        links: List[str] = []
        for anchor in soup.select(selector):
            href = anchor.get("href")
            if not href:
                continue
            text = " ".join([anchor.get_text(" "), anchor.get("title") or ""])
            if count_keyword_matches(text, product.matcher.keywords) >= MIN_KEYWORD_MATCHES:
                url = provider.absolute_url(href, relative_to=page_url)
                if url not in links:
                    links.append(url)
        if links:
            return links
    return []


# ======================
# URL 发现
# ======================
def _browse_listing(
    listing_url: str,
    provider: RetailProvider,
    product: RetailProduct,
    result: DiscoveryResult,
    network: Optional[NetworkSettings],
) -> Optional[str]:
    """打开列表页，逐个校验候选商品链接"""
    response = make_request(listing_url, headers=provider.headers, network=network)
    result.http_status = response.status_code
    if not response.ok:
        return None

    for candidate in find_product_links(response.text, listing_url, provider, product):
        result.attempted_urls.append(candidate)
        is_valid, status = validate_url(candidate, provider, product, network)
        result.http_status = status
        if is_valid:
            return candidate
    return None


def discover_product_url(
    provider: RetailProvider,
    product: RetailProduct,
    network: Optional[NetworkSettings] = None,
) -> DiscoveryResult:
    """
    按配置的策略顺序发现商品地址，不抛出网络异常

    所有尝试过的地址都保留在 attempted_urls 中
    """
    result = DiscoveryResult(url=None, strategy="none")

    for strategy in product.strategies:
        try:
            if strategy == DIRECT_URL and product.direct_url:
                url = provider.absolute_url(product.direct_url)
                result.attempted_urls.append(url)
                is_valid, status = validate_url(url, provider, product, network)
                result.http_status = status
                if is_valid:
                    result.url = url
            elif strategy == SITE_SEARCH and product.search_path:
                search_url = provider.absolute_url(product.search_path)
                result.attempted_urls.append(search_url)
                result.url = _browse_listing(search_url, provider, product, result, network)
            elif strategy == CATEGORY_BROWSE and product.category_path:
                category_url = provider.absolute_url(product.category_path)
                result.attempted_urls.append(category_url)
                result.url = _browse_listing(category_url, provider, product, result, network)
        except RequestException as e:
            result.error = str(e)
            logger.warning(f"[零售价采集] {provider.name} 策略 {strategy} 失败: {e}")
            continue

        if result.url:
            result.strategy = strategy
            result.error = None
            logger.info(f"[零售价采集] {provider.name} / {product.product} 通过 {strategy} 找到: {result.url}")
            return result

    result.error = result.error or "所有 URL 发现策略均失败"
    return result


# ======================
# 价格提取
# ======================
def _machine_price(value: Any) -> Optional[float]:
    """属性值（如 content="35.80"）优先按纯数字解析"""
    if value is None:
        return None
    text = str(value).strip()
    if _PLAIN_NUMBER.match(text):
        price = float(text)
        return price if price > 0 else None
    return parse_price_text(text)


def _element_price(element, selector: str) -> Optional[float]:
    if element.name == "meta":
        return _machine_price(element.get("content"))

    if element.get("content"):
        price = _machine_price(element.get("content"))
        if price:
            return price

    attr = _ATTRIBUTE_SELECTOR.search(selector)
    if attr and element.get(attr.group(1)):
        price = _machine_price(element.get(attr.group(1)))
        if price:
            return price

    return parse_price_text(element.get_text(" ", strip=True))


def _from_selectors(soup: BeautifulSoup, selectors, method: str) -> Optional[PriceExtraction]:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        price = _element_price(element, selector)
        if price:
            return PriceExtraction(price=price, excerpt=f"{selector}: {str(element)[:EXCERPT_LIMIT]}", method=method)
    return None


def _json_ld_items(data: Any) -> List[dict]:
    if isinstance(data, list):
        items = []
        for item in data:
            items.extend(_json_ld_items(item))
        return items
    if isinstance(data, dict):
        if "@graph" in data:
            return _json_ld_items(data["@graph"])
        return [data]
    return []


def _is_product(item: dict) -> bool:
    item_type = item.get("@type")
    if isinstance(item_type, list):
        return "Product" in item_type
    return item_type == "Product"


def _from_json_ld(soup: BeautifulSoup) -> Optional[PriceExtraction]:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or script.get_text() or "")
        except ValueError:
            continue
        for item in _json_ld_items(data):
            if not _is_product(item) or not item.get("offers"):
                continue
            offers = item["offers"]
            if isinstance(offers, list):
                offers = offers[0] if offers else {}
            if not isinstance(offers, dict):
                continue
            price = _machine_price(offers.get("price") or offers.get("lowPrice"))
            if price:
                excerpt = f"JSON-LD: {json.dumps(offers, ensure_ascii=False)[:EXCERPT_LIMIT]}"
                return PriceExtraction(price=price, excerpt=excerpt, method="json-ld")
    return None


def extract_price(html: str, selectors=()) -> PriceExtraction:
    """
    提取价格：结构化元数据 -> 配置的选择器 -> JSON-LD 商品数据

    Returns:
        PriceExtraction，未找到时 price 为 None
    """
    soup = BeautifulSoup(html, "lxml")
    return (
        _from_selectors(soup, METADATA_SELECTORS, "metadata")
        or _from_selectors(soup, selectors, "selector")
        or _from_json_ld(soup)
        or PriceExtraction(price=None)
    )
