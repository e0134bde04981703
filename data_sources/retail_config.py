"""
零售经销商配置
每个经销商定义基础地址、产品匹配关键词、URL 发现策略与价格选择器
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from config import RetailSettings


# URL 发现策略
DIRECT_URL = "direct-url"
SITE_SEARCH = "site-search"
CATEGORY_BROWSE = "category-browse"

DEFAULT_STRATEGY_ORDER: Tuple[str, ...] = (DIRECT_URL, SITE_SEARCH, CATEGORY_BROWSE)

# 搜索结果 / 分类列表中的商品链接
DEFAULT_LINK_SELECTORS: Tuple[str, ...] = (
    ".product-item a[href]",
    ".search-result-item a[href]",
    "a.product-link[href]",
    "article.product a[href]",
    ".product-list-item a[href]",
)

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "de-DE,de;q=0.9,en;q=0.8",
}


@dataclass(frozen=True)
class ProductMatcher:
    keywords: Tuple[str, ...]              # 页面 / 链接文本中至少命中 2 个
    fine_oz: float = 1.0                   # 纯银盎司数
    exact_name: Optional[str] = None


@dataclass(frozen=True)
class RetailProduct:
    product: str
    matcher: ProductMatcher
    direct_url: Optional[str] = None
    search_path: Optional[str] = None
    category_path: Optional[str] = None
    strategies: Tuple[str, ...] = DEFAULT_STRATEGY_ORDER


@dataclass(frozen=True)
class RetailProvider:
    name: str
    display_name: str
    base_url: str
    products: Tuple[RetailProduct, ...]
    price_selectors: Tuple[str, ...]
    link_selectors: Tuple[str, ...] = DEFAULT_LINK_SELECTORS
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    def absolute_url(self, path: str, relative_to: Optional[str] = None) -> str:
        """相对路径 -> 绝对 URL"""
        return urljoin(relative_to or self.base_url + "/", path)


RETAIL_PROVIDERS: Tuple[RetailProvider, ...] = (
    RetailProvider(
        name="proaurum",
        display_name="Pro Aurum",
        base_url="https://www.proaurum.de",
        products=(
            RetailProduct(
                product="1oz Philharmoniker",
                matcher=ProductMatcher(
                    keywords=("philharmoniker", "1 oz", "silber", "österreich"),
                    exact_name="Philharmoniker 1 oz Silber",
                    fine_oz=1.0,
                ),
                search_path="/search?q=philharmoniker+1+oz+silber",
                category_path="/shop/silber/",
            ),
        ),
        price_selectors=(
            'meta[property="product:price:amount"]',
            '[itemprop="price"]',
            ".product-price .price-value",
            ".price-final_price .price",
            "[data-price-amount]",
            ".price-box .price",
        ),
    ),
    RetailProvider(
        name="degussa",
        display_name="Degussa Goldhandel",
        base_url="https://www.degussa-goldhandel.de",
        products=(
            RetailProduct(
                product="1oz Maple Leaf",
                matcher=ProductMatcher(
                    keywords=("maple leaf", "1 oz", "silber", "kanada"),
                    exact_name="Maple Leaf 1 oz Silber",
                    fine_oz=1.0,
                ),
                search_path="/search?q=maple+leaf+1+oz",
                category_path="/silber/silbermuenzen/",
            ),
        ),
        price_selectors=(
            'meta[property="product:price:amount"]',
            '[itemprop="price"]',
            ".product-detail-price .price-value",
            ".price-final_price .price",
            ".product-price-value",
            "[data-price]",
        ),
    ),
)


# ======================
# 从配置文件构建
# ======================
def _tuple(value: Optional[Sequence[str]], default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    if not value:
        return default
    return tuple(str(v) for v in value)


def product_from_dict(raw: Dict[str, Any]) -> RetailProduct:
    matcher = raw.get("matcher") or {}
    return RetailProduct(
        product=raw["product"],
        matcher=ProductMatcher(
            keywords=_tuple(matcher.get("keywords")),
            fine_oz=float(matcher.get("fine_oz", 1.0)),
            exact_name=matcher.get("exact_name"),
        ),
        direct_url=raw.get("direct_url"),
        search_path=raw.get("search_path"),
        category_path=raw.get("category_path"),
        strategies=_tuple(raw.get("strategies"), DEFAULT_STRATEGY_ORDER),
    )


def provider_from_dict(raw: Dict[str, Any]) -> RetailProvider:
    """
    配置文件中的经销商定义 -> RetailProvider

    示例:
        name: degussa
        base_url: https://www.degussa-goldhandel.de
        products:
          - product: 1oz Maple Leaf
            matcher: {keywords: [maple leaf, 1 oz, silber], fine_oz: 1.0}
            search_path: /search?q=maple+leaf+1+oz
        price_selectors: ['[itemprop="price"]']
    """
    headers = dict(DEFAULT_HEADERS)
    headers.update(raw.get("headers") or {})
    return RetailProvider(
        name=raw["name"],
        display_name=raw.get("display_name", raw["name"]),
        base_url=str(raw["base_url"]).rstrip("/"),
        products=tuple(product_from_dict(p) for p in raw.get("products") or []),
        price_selectors=_tuple(raw.get("price_selectors")),
        link_selectors=_tuple(raw.get("link_selectors"), DEFAULT_LINK_SELECTORS),
        headers=headers,
    )


def load_retail_providers(settings: Optional[RetailSettings] = None) -> List[RetailProvider]:
    """配置了 retail.providers 时使用配置，否则使用内置列表"""
    if settings is None or not settings.providers:
        return list(RETAIL_PROVIDERS)
    return [provider_from_dict(raw) for raw in settings.providers]
