import json
import pytest
from datetime import date

from config import AppSettings, RetailSettings
from data_sources.result import ErrorKind
from data_sources.retail_config import (
    RetailProvider,
    RetailProduct,
    ProductMatcher,
    DIRECT_URL,
    SITE_SEARCH,
    load_retail_providers,
    provider_from_dict,
)
from data_sources.retail_discovery import (
    DiscoveryResult,
    discover_product_url,
    extract_price,
    find_product_links,
    validate_url,
)
from data_sources import retail_fetcher
from data_sources.retail_fetcher import VERIFIED, UNVERIFIED, INVALID_PARSE, FAILED
from validator import check_retail_plausibility


PRODUCT = RetailProduct(
    product="1oz Maple Leaf",
    matcher=ProductMatcher(keywords=("maple leaf", "1 oz", "silber", "kanada"), fine_oz=1.0),
    direct_url="/maple-leaf-1oz",
    search_path="/search?q=maple+leaf",
)

PROVIDER = RetailProvider(
    name="shop",
    display_name="Shop",
    base_url="https://shop.example",
    products=(PRODUCT,),
    price_selectors=(".price-value",),
)

PRODUCT_PAGE = """
<html><body>
  <h1>Maple Leaf 1 oz Silber</h1>
  <p>Kanada, 2024</p>
  <span class="price-value">35,80 €</span>
</body></html>
"""

SEARCH_PAGE = """
<html><body>
  <div class="product-item"><a href="/p/krugerrand-1oz">Krügerrand 1 oz Gold</a></div>
  <div class="product-item"><a href="/p/maple-leaf-1oz">Maple Leaf 1 oz Silber</a></div>
</body></html>
"""


def _response(mocker, status_code=200, text=""):
    response = mocker.MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    return response


def _router(mocker, routes):
    """按 (method, url) 返回预置响应，未登记的地址返回 404"""
    def _request(url, method="GET", **kwargs):
        status_code, text = routes.get((method, url), (404, ""))
        return _response(mocker, status_code, text)
    return _request


# ======================
# 价格提取
# ======================
def test_extract_price_prefers_structured_metadata():
    html = """
    <html><head><meta property="product:price:amount" content="36.10"></head>
    <body><span class="price-value">35,80 €</span></body></html>
    """
    extraction = extract_price(html, (".price-value",))
    assert extraction.price == 36.10
    assert extraction.method == "metadata"


def test_extract_price_from_selector():
    extraction = extract_price(PRODUCT_PAGE, (".missing", ".price-value"))
    assert extraction.price == pytest.approx(35.80)
    assert extraction.method == "selector"
    assert ".price-value" in extraction.excerpt


def test_extract_price_from_json_ld_graph():
    data = {
        "@context": "https://schema.org",
        "@graph": [
            {"@type": "BreadcrumbList"},
            {"@type": "Product", "name": "Maple Leaf", "offers": {"@type": "Offer", "price": "37.25"}},
        ],
    }
    html = f'<html><body><script type="application/ld+json">{json.dumps(data)}</script></body></html>'
    extraction = extract_price(html)
    assert extraction.price == 37.25
    assert extraction.method == "json-ld"


def test_extract_price_not_found():
    assert extract_price("<html><body>Ausverkauft</body></html>", (".price-value",)).price is None


# ======================
# URL 发现
# ======================
def test_find_product_links_requires_two_keywords():
    links = find_product_links(SEARCH_PAGE, "https://shop.example/search?q=maple+leaf", PROVIDER, PRODUCT)
    assert links == ["https://shop.example/p/maple-leaf-1oz"]


def test_validate_url_head_not_found_skips_get(mocker):
    mock_request = mocker.patch(
        "data_sources.retail_discovery.make_request",
        side_effect=_router(mocker, {}),
    )
    assert validate_url("https://shop.example/gone", PROVIDER, PRODUCT) == (False, 404)
    assert mock_request.call_count == 1


def test_validate_url_falls_back_to_get_on_forbidden_head(mocker):
    url = "https://shop.example/maple-leaf-1oz"
    mocker.patch(
        "data_sources.retail_discovery.make_request",
        side_effect=_router(mocker, {("HEAD", url): (405, ""), ("GET", url): (200, PRODUCT_PAGE)}),
    )
    assert validate_url(url, PROVIDER, PRODUCT) == (True, 200)


def test_discover_direct_url(mocker):
    url = "https://shop.example/maple-leaf-1oz"
    mocker.patch(
        "data_sources.retail_discovery.make_request",
        side_effect=_router(mocker, {("HEAD", url): (200, "")}),
    )
    result = discover_product_url(PROVIDER, PRODUCT)

    assert result.success
    assert result.url == url
    assert result.strategy == DIRECT_URL
    assert result.attempted_urls == [url]


def test_discover_falls_through_to_site_search(mocker):
    """直接地址 404 后转入站内搜索，所有尝试过的地址都被记录"""
    search_url = "https://shop.example/search?q=maple+leaf"
    candidate = "https://shop.example/p/maple-leaf-1oz"
    mocker.patch(
        "data_sources.retail_discovery.make_request",
        side_effect=_router(mocker, {
            ("GET", search_url): (200, SEARCH_PAGE),
            ("HEAD", candidate): (200, ""),
        }),
    )
    result = discover_product_url(PROVIDER, PRODUCT)

    assert result.url == candidate
    assert result.strategy == SITE_SEARCH
    assert result.attempted_urls == ["https://shop.example/maple-leaf-1oz", search_url, candidate]


def test_discover_all_strategies_fail(mocker):
    mocker.patch("data_sources.retail_discovery.make_request", side_effect=_router(mocker, {}))
    result = discover_product_url(PROVIDER, PRODUCT)

    assert not result.success
    assert result.http_status == 404
    assert result.error
    assert len(result.attempted_urls) == 2


# ======================
# 经销商配置
# ======================
def test_provider_from_dict_uses_default_strategies():
    provider = provider_from_dict({
        "name": "degussa",
        "base_url": "https://www.degussa-goldhandel.de/",
        "products": [{"product": "1oz Maple Leaf", "matcher": {"keywords": ["maple leaf", "1 oz"]}}],
        "price_selectors": ['[itemprop="price"]'],
    })
    assert provider.base_url == "https://www.degussa-goldhandel.de"
    assert provider.products[0].strategies[0] == DIRECT_URL
    assert provider.products[0].matcher.fine_oz == 1.0


def test_load_retail_providers_defaults_to_builtin():
    assert [p.name for p in load_retail_providers(RetailSettings())] == ["proaurum", "degussa"]


# ======================
# 报价判定
# ======================
@pytest.fixture
def settings():
    return AppSettings.from_dict({"network": {"retry_times": 1, "retry_interval": 0}})


@pytest.fixture
def found(mocker):
    return mocker.patch(
        "data_sources.retail_fetcher.discover_product_url",
        return_value=DiscoveryResult(
            url="https://shop.example/maple-leaf-1oz",
            strategy=DIRECT_URL,
            attempted_urls=["https://shop.example/maple-leaf-1oz"],
            http_status=200,
        ),
    )


def _quote(settings, spot=30.0, rate=0.92):
    return retail_fetcher.fetch_product_quote(date(2024, 6, 3), PROVIDER, PRODUCT, settings, spot, rate)


def test_quote_verified(mocker, settings, found):
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 200, PRODUCT_PAGE))
    record = _quote(settings)

    assert record["verification_status"] == VERIFIED
    assert record["price"] == pytest.approx(35.80)
    assert record["implied_usd_per_oz"] == pytest.approx(35.80 / 0.92, abs=1e-4)
    assert record["premium_percent"] == pytest.approx((35.80 / 0.92 - 30.0) / 30.0 * 100, abs=1e-3)
    assert record["discovery_strategy"] == DIRECT_URL
    assert record["error_message"] is None


def test_quote_below_spot_is_invalid_parse(mocker, settings, found):
    """2.50 EUR 明显是解析到了别的数字（如运费）"""
    page = PRODUCT_PAGE.replace("35,80 €", "2,50 €")
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 200, page))
    record = _quote(settings)

    assert record["verification_status"] == INVALID_PARSE
    assert "过低" in record["error_message"]


def test_quote_above_twenty_times_spot_is_invalid_parse(mocker, settings, found):
    """现货 30 USD × 0.92 = 27.60 EUR，上限 552 EUR"""
    page = PRODUCT_PAGE.replace("35,80 €", "1.234,50 €")
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 200, page))
    record = _quote(settings)

    assert record["verification_status"] == INVALID_PARSE
    assert record["price"] == pytest.approx(1234.50)
    assert "过高" in record["error_message"]


def test_plausibility_bounds_are_inclusive():
    ctx = AppSettings().validation
    spot = 100.0

    assert check_retail_plausibility(spot * ctx.retail_min_spot_ratio, spot, ctx) == (True, None)
    assert check_retail_plausibility(spot * ctx.retail_max_spot_ratio, spot, ctx) == (True, None)

    too_low, note = check_retail_plausibility(94.99, spot, ctx)
    assert not too_low and "过低" in note
    too_high, note = check_retail_plausibility(2000.01, spot, ctx)
    assert not too_high and "过高" in note


def test_quote_without_spot_is_unverified(mocker, settings, found):
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 200, PRODUCT_PAGE))
    record = _quote(settings, spot=None, rate=None)

    assert record["verification_status"] == UNVERIFIED
    assert record["price"] == pytest.approx(35.80)
    assert record["premium_percent"] is None


def test_quote_http_error_is_failed(mocker, settings, found):
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 503))
    record = _quote(settings)

    assert record["verification_status"] == FAILED
    assert record["http_status"] == 503
    assert record["source_url"] == "https://shop.example/maple-leaf-1oz"


def test_quote_without_price_keeps_html_excerpt(mocker, settings, found):
    page = "<html><body>" + "x" * 5000 + "</body></html>"
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 200, page))
    record = _quote(settings)

    assert record["verification_status"] == FAILED
    assert len(record["raw_excerpt"]) == retail_fetcher.FAILED_HTML_LIMIT


def test_quote_discovery_failure_is_failed(mocker, settings):
    mocker.patch(
        "data_sources.retail_fetcher.discover_product_url",
        return_value=DiscoveryResult(
            url=None,
            strategy="none",
            attempted_urls=["https://shop.example/maple-leaf-1oz"],
            http_status=404,
            error="所有 URL 发现策略均失败",
        ),
    )
    record = _quote(settings)

    assert record["verification_status"] == FAILED
    assert record["attempted_urls"] == ["https://shop.example/maple-leaf-1oz"]
    assert "URL 发现失败" in record["error_message"]


def test_quote_unexpected_exception_is_failed(mocker, settings):
    mocker.patch("data_sources.retail_fetcher.discover_product_url", side_effect=RuntimeError("parser crashed"))
    record = _quote(settings)

    assert record["verification_status"] == FAILED
    assert record["error_message"] == "RuntimeError: parser crashed"


def test_fetch_retail_prices_without_providers(settings):
    outcome = retail_fetcher.fetch_retail_prices(date(2024, 6, 3), 30.0, settings, usd_to_quote=0.92, providers=[])
    assert outcome.failure.kind == ErrorKind.NO_DATA


def test_fetch_retail_prices_keeps_failed_rows(mocker, settings, found):
    mocker.patch("data_sources.retail_fetcher.make_request", return_value=_response(mocker, 503))
    outcome = retail_fetcher.fetch_retail_prices(
        date(2024, 6, 3), 30.0, settings, usd_to_quote=0.92, providers=[PROVIDER]
    )

    assert outcome.ok
    assert [r["verification_status"] for r in outcome.value] == [FAILED]
