import pytest
import requests
from datetime import date

from config import AppSettings
from data_sources.result import ErrorKind
from data_sources.fx_fetcher import (
    EXCHANGERATE_HOST_URL,
    fetch_fx_quote,
    fetch_usd_cny_rate,
    parse_ecb_rates,
)
from data_sources.spot_price import METALS_DEV_URL, YAHOO_CHART_URL, fetch_spot_price
from data_sources.benchmark_price import fetch_benchmark_price
from utils.units import TROY_OUNCE_TO_GRAM


ECB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<gesmes:Envelope xmlns:gesmes="http://www.gesmes.org/xml/2002-08-01" xmlns="http://www.ecb.int/vocabulary/2002-08-01/eurofxref">
  <Cube>
    <Cube time="2024-06-03">
      <Cube currency="USD" rate="1.0850"/>
      <Cube currency="CNY" rate="7.8600"/>
    </Cube>
  </Cube>
</gesmes:Envelope>
"""


def _settings(**overrides):
    config = {"network": {"retry_times": 1, "retry_interval": 0, "provider_timeout": None}}
    config.update(overrides)
    return AppSettings.from_dict(config)


def _response(mocker, status_code=200, text="", payload=None):
    response = mocker.MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload or {}
    return response


# ======================
# 汇率
# ======================
def test_parse_ecb_rates():
    rates = parse_ecb_rates(ECB_XML)
    assert rates == {"EUR": 1.0, "USD": 1.085, "CNY": 7.86}


def test_fx_quote_cross_rate_from_ecb(mocker):
    mocker.patch("data_sources.fx_fetcher.make_request", return_value=_response(mocker, text=ECB_XML))
    settings = _settings(providers={"fx": ["ecb"]})

    outcome = fetch_fx_quote(date(2024, 6, 3), "EUR", settings)

    assert outcome.ok
    assert outcome.value["rate"] == pytest.approx(1 / 1.085, abs=1e-6)
    assert outcome.value["source"] == "ecb"


def test_fx_quote_identity():
    outcome = fetch_fx_quote(date(2024, 6, 3), "usd", _settings())
    assert outcome.value["rate"] == 1.0
    assert outcome.value["source"] == "identity"


def test_usd_cny_falls_back_to_next_provider(mocker):
    def fake_fetch_json(url, **kwargs):
        if url == EXCHANGERATE_HOST_URL:
            raise requests.ConnectionError("refused")
        return {"amount": 1.0, "base": "USD", "date": "2024-06-03", "rates": {"CNY": 7.2412}}

    mocker.patch("data_sources.fx_fetcher.fetch_json", side_effect=fake_fetch_json)
    settings = _settings(providers={"fx": ["exchangerate_host", "frankfurter"]})

    outcome = fetch_usd_cny_rate(date(2024, 6, 3), settings)

    assert outcome.ok
    assert outcome.value == {"date": "2024-06-03", "usd_cny": 7.2412, "source": "frankfurter"}


def test_usd_cny_large_daily_move_is_only_a_warning(mocker):
    mocker.patch("data_sources.fx_fetcher.fetch_json", return_value={"rates": {"CNY": 7.5}})
    settings = _settings(providers={"fx": ["frankfurter"]})

    outcome = fetch_usd_cny_rate(date(2024, 6, 3), settings, previous_rate=7.0)

    assert outcome.ok
    assert outcome.value["usd_cny"] == 7.5


def test_usd_cny_all_providers_fail(mocker):
    mocker.patch("data_sources.fx_fetcher.fetch_json", side_effect=requests.Timeout("slow"))
    settings = _settings(providers={"fx": ["exchangerate_host", "frankfurter"]})

    outcome = fetch_usd_cny_rate(date(2024, 6, 3), settings)

    assert not outcome.ok
    assert outcome.failure.kind == ErrorKind.FETCH_ERROR


# ======================
# 现货价
# ======================
def test_spot_manual_override_wins():
    settings = _settings(credentials={"manual_spot_usd_per_oz": "30.5"})
    outcome = fetch_spot_price(date(2024, 6, 3), settings)

    assert outcome.value["price_usd_per_oz"] == 30.5
    assert outcome.value["source"] == "manual"


def test_spot_metals_api_inverts_rate(mocker):
    mocker.patch("data_sources.spot_price.fetch_json", return_value={"rates": {"XAG": 0.032}})
    settings = _settings(credentials={"metals_api_key": "k"}, providers={"spot": ["metals_api"]})

    outcome = fetch_spot_price(date(2024, 6, 3), settings)

    assert outcome.value["price_usd_per_oz"] == pytest.approx(31.25)


def test_spot_out_of_range_value_is_rejected(mocker):
    """按千克报价的 950 USD 被拒绝，回退到下一个数据源"""
    def fake_fetch_json(url, **kwargs):
        if url == METALS_DEV_URL:
            return {"metals": {"silver": 950.0}}
        if url == YAHOO_CHART_URL:
            return {"chart": {"result": [{"meta": {"regularMarketPrice": 30.2}}]}}
        return {}

    mocker.patch("data_sources.spot_price.fetch_json", side_effect=fake_fetch_json)
    settings = _settings(providers={"spot": ["metals_dev", "yahoo"]})

    outcome = fetch_spot_price(date(2024, 6, 3), settings)

    assert outcome.value["price_usd_per_oz"] == 30.2
    assert outcome.value["contract"] == "SI=F"


def test_spot_unconfigured_providers_yield_no_data():
    settings = _settings(providers={"spot": ["manual", "goldapi", "metals_api"]})
    outcome = fetch_spot_price(date(2024, 6, 3), settings)

    assert not outcome.ok
    assert outcome.failure.kind == ErrorKind.NO_DATA


# ======================
# 基准价
# ======================
def test_benchmark_from_sge_records_conversion_steps(mocker):
    payload = {"time": [["2024-05-31", 7500, 7550, 7450, 7600], ["2024-06-03", 7550, 7600, 7500, 7650]]}
    mocker.patch("data_sources.benchmark_price.make_request", return_value=_response(mocker, payload=payload))
    settings = _settings(providers={"benchmark": ["sge"]})

    outcome = fetch_benchmark_price(date(2024, 6, 3), 7.24, settings=settings)

    record = outcome.value
    assert record["provider"] == "sge"
    assert record["price_cny_per_gram"] == 7.6
    assert record["price_usd_per_oz"] == pytest.approx(7.6 * TROY_OUNCE_TO_GRAM / 7.24, abs=1e-4)
    assert record["fx_rate_used"] == 7.24
    assert record["is_estimated"] is False
    assert len(record["conversion_steps"]) == 3
    assert record["raw_payload"]["row"][0] == "2024-06-03"


def test_benchmark_missing_day_falls_back_to_spot_premium(mocker):
    payload = {"time": [["2024-05-31", 7500, 7550, 7450, 7600]]}
    mocker.patch("data_sources.benchmark_price.make_request", return_value=_response(mocker, payload=payload))
    settings = _settings(providers={"benchmark": ["sge", "spot_premium"]})

    outcome = fetch_benchmark_price(date(2024, 6, 3), 7.24, spot_usd_per_oz=30.0, settings=settings)

    record = outcome.value
    assert record["provider"] == "spot_premium"
    assert record["is_estimated"] is True
    assert record["price_usd_per_oz"] == pytest.approx(30.9)


def test_benchmark_manual_is_flagged_estimated():
    settings = _settings(
        credentials={"manual_benchmark_cny_per_gram": 7.6},
        providers={"benchmark": ["manual"]},
    )
    outcome = fetch_benchmark_price(date(2024, 6, 3), 7.24, settings=settings)

    assert outcome.value["provider"] == "manual"
    assert outcome.value["is_estimated"] is True


def test_benchmark_http_error_is_fetch_error(mocker):
    mocker.patch("data_sources.benchmark_price.make_request", return_value=_response(mocker, status_code=502))
    settings = _settings(providers={"benchmark": ["sge"]})

    outcome = fetch_benchmark_price(date(2024, 6, 3), 7.24, settings=settings)

    assert outcome.failure.kind == ErrorKind.FETCH_ERROR
