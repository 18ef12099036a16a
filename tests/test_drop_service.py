from datetime import datetime, timedelta, timezone

from storefront.services.drop_service import DropService, DropStatus, classify_drop

RELEASE = datetime(2026, 3, 6, 17, 0, tzinfo=timezone.utc)
END = datetime(2026, 3, 8, 17, 0, tzinfo=timezone.utc)


def test_classify_before_release_is_upcoming():
    assert classify_drop(RELEASE - timedelta(seconds=1), RELEASE, END) is DropStatus.UPCOMING


def test_classify_boundaries_are_live():
    assert classify_drop(RELEASE, RELEASE, END) is DropStatus.LIVE
    assert classify_drop(END, RELEASE, END) is DropStatus.LIVE


def test_classify_after_end_is_ended():
    assert classify_drop(END + timedelta(microseconds=1), RELEASE, END) is DropStatus.ENDED


def test_classify_missing_dates_is_upcoming():
    assert classify_drop(RELEASE, None, END) is DropStatus.UPCOMING
    assert classify_drop(RELEASE, RELEASE, None) is DropStatus.UPCOMING


def test_classify_accepts_naive_utc_values():
    naive_release = RELEASE.replace(tzinfo=None)
    naive_end = END.replace(tzinfo=None)
    assert classify_drop(RELEASE + timedelta(hours=1), naive_release, naive_end) is DropStatus.LIVE


def test_active_drop_prefers_live_ending_soonest(db_session, make_product, clock):
    make_product(release=clock.now + timedelta(hours=2), end=clock.now + timedelta(days=2))
    later = make_product(end=clock.now + timedelta(days=3))
    sooner = make_product(end=clock.now + timedelta(hours=6))

    active = DropService(db_session, clock=clock).get_active_drop()

    assert active.productID == sooner.productID
    assert active.productID != later.productID


def test_active_drop_falls_back_to_next_upcoming(db_session, make_product, clock):
    make_product(release=clock.now - timedelta(days=3), end=clock.now - timedelta(days=1))
    far = make_product(release=clock.now + timedelta(days=5), end=clock.now + timedelta(days=6))
    near = make_product(release=clock.now + timedelta(days=1), end=clock.now + timedelta(days=2))

    active = DropService(db_session, clock=clock).get_active_drop()

    assert active.productID == near.productID
    assert active.productID != far.productID


def test_active_drop_ignores_inactive_and_regular_products(db_session, make_product, clock):
    make_product(active=False)
    make_product(limited=False)

    assert DropService(db_session, clock=clock).get_active_drop() is None


def test_describe_reports_status_and_inventory(db_session, make_product, clock):
    product = make_product(inventory=4, variants=2)

    described = DropService(db_session, clock=clock).describe(product)

    assert described["status"] == "live"
    assert described["totalInventory"] == 8
    assert described["image"] == "https://cdn.example/hoodie.jpg"


def test_windowless_drop_is_flagged(db_session, make_product, clock, caplog):
    product = make_product(windowless=True)

    with caplog.at_level("WARNING", logger="storefront.services.drop_service"):
        status = DropService(db_session, clock=clock).status_for(product)

    assert status is DropStatus.UPCOMING
    assert "incomplete drop window" in caplog.text
    assert DropService(db_session, clock=clock).get_active_drop() is None
