import gc

from models import Exchange
from repositories import HoldingRepository
from services import HoldingFeed
from tests.conftest import USER_ID, make_stock


def test_subscribe_delivers_current_snapshot(feed, account):
    make_stock(account.id, "AAPL")
    received = []

    feed.subscribe(USER_ID, received.append)

    assert len(received) == 1
    assert [h.ticker for h in received[0]] == ["AAPL"]


def test_publish_reloads_persisted_state(feed, account):
    holding = make_stock(account.id, "AAPL")
    received = []
    feed.subscribe(USER_ID, received.append)

    HoldingRepository.update_fields(holding.id, {"current_price": 321.0})
    feed.publish(USER_ID)

    assert received[-1][0].current_price == 321.0


def test_unsubscribe_stops_delivery_and_is_idempotent(feed, account):
    received = []
    unsubscribe = feed.subscribe(USER_ID, received.append)
    assert feed.subscriber_count(USER_ID) == 1

    unsubscribe()
    unsubscribe()
    feed.publish(USER_ID)

    assert feed.subscriber_count(USER_ID) == 0
    assert len(received) == 1


def test_filter_limits_snapshot(feed, account):
    make_stock(account.id, "AAPL")
    make_stock(account.id, "RY", Exchange.CANADA)
    received = []

    feed.subscribe(USER_ID, received.append, lambda h: h.ticker == "RY")

    assert [h.ticker for h in received[0]] == ["RY"]


def test_publish_is_scoped_to_user(feed, account):
    mine, theirs = [], []
    feed.subscribe(USER_ID, mine.append)
    feed.subscribe("someone-else", theirs.append)

    feed.publish(USER_ID)

    assert len(mine) == 2
    assert len(theirs) == 1


def test_failing_subscriber_does_not_affect_others(feed, account):
    received = []

    def broken(holdings):
        raise RuntimeError("view went away")

    feed.subscribe(USER_ID, broken)
    feed.subscribe(USER_ID, received.append)
    feed.publish(USER_ID)

    assert len(received) == 2


def test_publish_without_subscribers_skips_loading():
    loads = []
    feed = HoldingFeed(loader=lambda user_id: loads.append(user_id) or [])
    feed.publish(USER_ID)
    assert loads == []


class View:
    def __init__(self):
        self.snapshots = []

    def on_snapshot(self, holdings):
        self.snapshots.append(holdings)


def test_weak_subscription_ends_with_its_owner(feed, account):
    make_stock(account.id, "AAPL")
    kept, dropped = View(), View()
    feed.subscribe(USER_ID, kept.on_snapshot, weak=True)
    feed.subscribe(USER_ID, dropped.on_snapshot, weak=True)
    assert feed.subscriber_count(USER_ID) == 2

    del dropped
    gc.collect()
    feed.publish(USER_ID)

    assert feed.subscriber_count(USER_ID) == 1
    assert len(kept.snapshots) == 2


def test_dead_subscriptions_skip_loading():
    loads = []
    feed = HoldingFeed(loader=lambda user_id: loads.append(user_id) or [])
    view = View()
    feed.subscribe(USER_ID, view.on_snapshot, weak=True)

    del view
    gc.collect()
    feed.publish(USER_ID)

    assert loads == [USER_ID]
    assert feed.subscriber_count(USER_ID) == 0
