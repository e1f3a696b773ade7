import pytest

import catalog
import codes
import ledger
import links
import purchases
from conftest import FakeCourier, RacingCollection
from errors import NotFoundError, NotLinkedError


@pytest.fixture
def sword(product_fields):
    return catalog.create_product(product_fields(external_product_id="DP1"))


def test_purchase_requires_link_then_succeeds(run, courier, sword):
    with pytest.raises(NotLinkedError):
        run(purchases.purchase(courier, "500100", "DP1"))
    assert not ledger.is_owned("500100", sword)
    assert courier.sent == []

    codes.issue_code("500100", "482913")
    links.verify("482913", "900")

    result = run(purchases.purchase(courier, "500100", "DP1"))
    assert result.newly_owned is True
    assert result.delivered is True
    assert ledger.is_owned("500100", sword)
    assert courier.sent == [("900", sword, "sword.rbxm", b"sword-bytes")]


def test_purchase_unknown_product(run, courier):
    links.link("500100", "900")
    with pytest.raises(NotFoundError):
        run(purchases.purchase(courier, "500100", "nope"))


def test_repeat_purchase_redelivers_without_second_row(run, courier, sword, db):
    links.link("500100", "900")
    run(purchases.purchase(courier, "500100", "DP1"))
    again = run(purchases.purchase(courier, "500100", "DP1"))

    assert again.newly_owned is False
    assert again.delivered is True
    assert len(courier.sent) == 2
    assert db["entitlements"].count_documents({"game_account_id": "500100"}) == 1


def test_delivery_failure_keeps_ownership(run, sword):
    links.link("500100", "900")
    courier = FakeCourier(fail_for=["900"])

    result = run(purchases.purchase(courier, "500100", "DP1"))

    assert ledger.is_owned("500100", sword)
    assert result.delivered is False
    body = result.to_dict()
    assert body["success"] is True
    assert body["error"] == "delivery_failed"


def test_grant_only_delivers_when_new(run, courier, sword):
    links.link("500100", "900")

    first = run(purchases.grant(courier, "500100", sword))
    second = run(purchases.grant(courier, "500100", sword))

    assert first.newly_owned and first.delivered
    assert not second.newly_owned and not second.delivered
    assert len(courier.sent) == 1

    forced = run(purchases.grant(courier, "500100", sword, redeliver=True))
    assert forced.delivered
    assert len(courier.sent) == 2


def test_grant_to_unlinked_account_records_ownership(run, courier, sword):
    result = run(purchases.grant(courier, "500100", sword))
    assert ledger.is_owned("500100", sword)
    assert result.delivered is False
    assert result.delivery_error_kind == "not_linked"


def test_grant_unknown_product(run, courier):
    with pytest.raises(NotFoundError):
        run(purchases.grant(courier, "500100", "65f0c0ffee00000000000000"))


def test_revoke(run, courier, sword):
    run(purchases.grant(courier, "500100", sword))
    assert purchases.revoke("500100", sword) is True
    assert purchases.revoke("500100", sword) is False


def test_replace_file_redelivers_to_owners(run, sword):
    links.link("1", "901")
    links.link("2", "902")
    ledger.grant("1", sword)
    ledger.grant("2", sword)
    ledger.grant("3", sword)  # owner without a link
    courier = FakeCourier(fail_for=["902"])

    product, sent, failed = run(purchases.replace_product_file(courier, sword, "sword-v2.rbxm", b"v2"))

    assert product["file_name"] == "sword-v2.rbxm"
    assert (sent, failed) == (1, 2)
    assert courier.sent == [("901", sword, "sword-v2.rbxm", b"v2")]


def test_racing_purchase_keeps_one_row_and_still_delivers(monkeypatch, run, courier, sword, db):
    links.link("500100", "900")
    real = db["entitlements"]

    def other_purchase():
        real.insert_one({"game_account_id": "500100", "product_id": sword, "source": "purchase"})

    monkeypatch.setattr(ledger, "_rows", lambda: RacingCollection(real, "update_one", before=other_purchase))

    result = run(purchases.purchase(courier, "500100", "DP1"))

    assert result.newly_owned is False
    assert result.delivered is True
    assert real.count_documents({"game_account_id": "500100", "product_id": sword}) == 1
