import logging

import pytest

from exceptions import NotSignedInError, OracleUnavailableError
from services import SessionContext
from services.session import FALLBACK_CAD_TO_USD_RATE


def test_sign_in_and_out(market_data):
    ctx = SessionContext(market_data=market_data)
    assert not ctx.is_signed_in
    with pytest.raises(NotSignedInError):
        ctx.require_user()

    ctx.sign_in("user-1", "Ada", "ada@example.com")
    assert ctx.is_signed_in
    assert ctx.require_user() == "user-1"
    assert ctx.display_name == "Ada"

    ctx.sign_out()
    assert ctx.user_id is None
    assert ctx.email is None
    with pytest.raises(NotSignedInError):
        ctx.require_user()


def test_rate_is_fetched_once_per_session(market_data, oracle):
    oracle.queue("0.73")
    ctx = SessionContext(market_data=market_data)
    ctx.sign_in("user-1")

    assert ctx.cad_to_usd_rate() == 0.73
    assert ctx.cad_to_usd_rate() == 0.73
    assert len(oracle.calls) == 1
    assert oracle.calls[0]["temperature"] == 0.0


def test_rate_falls_back_to_one(market_data, oracle, caplog):
    oracle.queue("I don't know")
    ctx = SessionContext(market_data=market_data)

    with caplog.at_level(logging.WARNING):
        assert ctx.cad_to_usd_rate() == FALLBACK_CAD_TO_USD_RATE

    assert "Using 1 as a fallback" in caplog.text


def test_rate_falls_back_when_oracle_fails(market_data, oracle):
    oracle.queue(OracleUnavailableError("down"))
    ctx = SessionContext(market_data=market_data)
    assert ctx.cad_to_usd_rate() == 1.0
    assert ctx.cad_to_usd_rate() == 1.0
    assert len(oracle.calls) == 1


def test_new_sign_in_refetches_rate(market_data, oracle):
    oracle.queue("0.73", "0.74")
    ctx = SessionContext(market_data=market_data)
    ctx.sign_in("user-1")
    assert ctx.cad_to_usd_rate() == 0.73

    ctx.sign_out()
    ctx.sign_in("user-2")
    assert ctx.cad_to_usd_rate() == 0.74


def test_rate_without_market_data():
    assert SessionContext().cad_to_usd_rate() == 1.0


class BrokenMarketData:
    def __init__(self):
        self.calls = 0

    def fetch_exchange_rate(self):
        self.calls += 1
        raise RuntimeError("unexpected SDK error")


def test_rate_falls_back_on_unexpected_errors(caplog):
    market_data = BrokenMarketData()
    ctx = SessionContext(market_data=market_data)

    with caplog.at_level(logging.WARNING):
        assert ctx.cad_to_usd_rate() == FALLBACK_CAD_TO_USD_RATE
    assert ctx.cad_to_usd_rate() == FALLBACK_CAD_TO_USD_RATE

    assert market_data.calls == 1
    assert "unexpected SDK error" in caplog.text
