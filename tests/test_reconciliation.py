from datetime import timedelta

import pytest

from exceptions import OracleUnavailableError
from models import AccountType, AssetKind, Currency, Exchange, Holding
from prompts import BatchFormat
from repositories import AccountRepository, HoldingRepository
from services import ReconciliationService
from services.reconciliation import as_utc, find_stale_holdings, is_metrics_stale, utc_now
from services.records import TickerMetrics
from tests.conftest import NOW, USER_ID, make_stock


@pytest.fixture
def reconciliation(market_data, feed, sleeps, clock):
    return ReconciliationService(market_data, feed, sleep=sleeps, clock=clock)


# ---------------------------------------------------------------- staleness

def test_staleness_threshold():
    never = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.STOCK, name="A")
    fresh = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.STOCK, name="B",
                    last_metrics_update=NOW - timedelta(hours=23))
    stale = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.STOCK, name="C",
                    last_metrics_update=NOW - timedelta(hours=25))
    cash = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.CASH, name="US Dollars")

    assert is_metrics_stale(never, NOW)
    assert not is_metrics_stale(fresh, NOW)
    assert is_metrics_stale(stale, NOW)
    assert not is_metrics_stale(cash, NOW)
    assert find_stale_holdings([never, fresh, stale, cash], NOW) == [never, stale]


def test_exactly_24_hours_is_not_stale():
    holding = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.STOCK, name="A",
                      last_metrics_update=NOW - timedelta(hours=24))
    assert not is_metrics_stale(holding, NOW)


def test_sweep_refreshes_only_stale_holdings_one_second_apart(reconciliation, oracle, sleeps, account):
    never = make_stock(account.id, "AAA")
    make_stock(account.id, "BBB", last_metrics_update=NOW - timedelta(hours=23))
    old = make_stock(account.id, "CCC", last_metrics_update=NOW - timedelta(hours=25))
    oracle.queue("PE_RATIO:::10", "PE_RATIO:::20")

    report = reconciliation.refresh_stale_metrics(USER_ID)

    assert report.refreshed == [never.id, old.id]
    assert len(oracle.calls) == 2
    assert '"AAA"' in oracle.prompts[0]
    assert '"CCC"' in oracle.prompts[1]
    assert sleeps.delays == [1.0]
    assert all(call["use_search"] for call in oracle.calls)


def test_sweep_stamps_refresh_time(reconciliation, oracle, clock, account):
    holding = make_stock(account.id, "AAA")
    oracle.queue("PE_RATIO:::10")
    reconciliation.refresh_stale_metrics(USER_ID)
    assert as_utc(HoldingRepository.get_by_id(holding.id, USER_ID).last_metrics_update) == clock.now


def test_sweep_continues_after_failure(reconciliation, oracle, account):
    first = make_stock(account.id, "AAA")
    second = make_stock(account.id, "BBB")
    oracle.queue(OracleUnavailableError("down"), "PE_RATIO:::20")

    report = reconciliation.refresh_stale_metrics(USER_ID)

    assert report.failed == [first.id]
    assert report.refreshed == [second.id]
    assert report.attempted == 2
    assert HoldingRepository.get_by_id(first.id, USER_ID).last_metrics_update is None


def test_sweep_with_nothing_known_leaves_holding_stale(reconciliation, oracle, account, clock):
    holding = make_stock(account.id, "AAA", pe_ratio=15.0)
    oracle.queue("PE_RATIO:::N/A|||MARKET_CAP:::N/A")

    report = reconciliation.refresh_stale_metrics(USER_ID)

    assert report.unchanged == [holding.id]
    stored = HoldingRepository.get_by_id(holding.id, USER_ID)
    assert stored.pe_ratio == 15.0
    assert is_metrics_stale(stored, clock.now)


def test_sweep_without_stale_holdings_makes_no_calls(reconciliation, oracle, account):
    make_stock(account.id, "AAA", last_metrics_update=NOW)
    report = reconciliation.refresh_stale_metrics(USER_ID)
    assert report.attempted == 0
    assert oracle.calls == []


def test_sweep_publishes_to_subscribers(reconciliation, oracle, feed, account):
    make_stock(account.id, "AAA")
    snapshots = []
    feed.subscribe(USER_ID, snapshots.append)
    oracle.queue("PE_RATIO:::10")

    reconciliation.refresh_stale_metrics(USER_ID)

    assert len(snapshots) == 2
    assert snapshots[-1][0].pe_ratio == 10.0


# ---------------------------------------------------------------- merge

def test_merge_preserves_known_values(reconciliation, account):
    holding = make_stock(
        account.id, "AAA", pe_ratio=15.0, market_cap="1.2T", company_profile="Old profile."
    )
    updated = reconciliation.merge_metrics(
        holding.id, TickerMetrics(pe_ratio=18.0, market_cap=None, company_profile=None)
    )
    assert updated.pe_ratio == 18.0
    assert updated.market_cap == "1.2T"
    assert updated.company_profile == "Old profile."


def test_merge_reads_latest_persisted_state(reconciliation, account):
    holding = make_stock(account.id, "AAA")
    HoldingRepository.update_fields(holding.id, {"current_price": 150.0})

    # holding is now an outdated copy; the merge must not write its price back
    reconciliation.merge_metrics(holding.id, TickerMetrics(pe_ratio=12.0))

    stored = HoldingRepository.get_by_id(holding.id, USER_ID)
    assert stored.current_price == 150.0
    assert stored.pe_ratio == 12.0


def test_merge_of_nothing_is_a_no_op(reconciliation, account):
    holding = make_stock(account.id, "AAA")
    assert reconciliation.merge_metrics(holding.id, None) is None
    assert reconciliation.merge_metrics(holding.id, TickerMetrics()) is None


# ---------------------------------------------------------------- price sync

def test_sync_prices_uses_one_call_and_matches_exact_pairs(reconciliation, oracle, clock, account):
    apple = make_stock(account.id, "AAPL", Exchange.USA)
    royal = make_stock(account.id, "RY", Exchange.CANADA)
    missing = make_stock(account.id, "SHOP", Exchange.CANADA, current_price=90.0)
    oracle.queue("AAPL:::USA:::200.5|||RY:::USA:::1.0|||RY:::Canada:::131.0|||MSFT:::USA:::400")

    updated = reconciliation.sync_prices(USER_ID, BatchFormat.TEXT)

    assert updated == 2
    assert len(oracle.calls) == 1
    assert HoldingRepository.get_by_id(apple.id, USER_ID).current_price == 200.5
    assert HoldingRepository.get_by_id(royal.id, USER_ID).current_price == 131.0
    untouched = HoldingRepository.get_by_id(missing.id, USER_ID)
    assert untouched.current_price == 90.0
    assert untouched.last_price_update is None
    assert as_utc(HoldingRepository.get_by_id(apple.id, USER_ID).last_price_update) == clock.now


def test_sync_prices_json_format(reconciliation, oracle, account):
    holding = make_stock(account.id, "AAPL")
    oracle.queue('{"prices": [{"ticker": "AAPL", "exchange": "USA", "price": 210}]}')

    assert reconciliation.sync_prices(USER_ID, BatchFormat.JSON) == 1
    assert oracle.calls[0]["schema"] is not None
    assert HoldingRepository.get_by_id(holding.id, USER_ID).current_price == 210.0


def test_sync_prices_deduplicates_pairs_across_accounts(reconciliation, oracle, account):
    other = AccountRepository.add(USER_ID, "RRSP", AccountType.RRSP)
    first = make_stock(account.id, "AAPL")
    second = make_stock(other.id, "AAPL")
    oracle.queue("AAPL:::USA:::205")

    assert reconciliation.sync_prices(USER_ID, BatchFormat.TEXT) == 2
    assert oracle.prompts[0].count("- AAPL (USA)") == 1
    assert HoldingRepository.get_by_id(first.id, USER_ID).current_price == 205.0
    assert HoldingRepository.get_by_id(second.id, USER_ID).current_price == 205.0


def test_sync_prices_without_stocks_makes_no_call(reconciliation, oracle, account):
    HoldingRepository.deposit_cash(USER_ID, account.id, Currency.USD, 10.0)
    assert reconciliation.sync_prices(USER_ID, BatchFormat.TEXT) == 0
    assert oracle.calls == []


def test_stored_naive_timestamps_are_read_as_utc():
    holding = Holding(user_id=USER_ID, account_id=1, kind=AssetKind.STOCK, name="A",
                      last_metrics_update=(NOW - timedelta(hours=25)).replace(tzinfo=None))
    assert is_metrics_stale(holding, NOW)
    assert as_utc(holding.last_metrics_update) == NOW - timedelta(hours=25)


def test_default_clock_is_utc(market_data):
    assert utc_now().utcoffset() == timedelta(0)
    assert ReconciliationService(market_data).clock is utc_now
