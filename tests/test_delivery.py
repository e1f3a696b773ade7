import pytest

import catalog
import delivery
import links
from errors import DeliveryError, NotLinkedError


class ExplodingCourier:
    async def send_product(self, chat_account_id, product):
        raise RuntimeError("socket closed")

    async def post_log(self, title, fields, color=0):
        raise AssertionError("should not log a failed delivery")


@pytest.fixture
def product(product_fields):
    return catalog.get_product(catalog.create_product(product_fields()))


def test_deliver_to_linked_account(run, courier, product):
    links.link("500100", "900")
    result = run(delivery.deliver(courier, "500100", product))

    assert result.chat_account_id == "900"
    assert result.channel == "dm:900"
    assert courier.logs and courier.logs[0][0] == "📦 Product Delivered"


def test_deliver_needs_link(run, courier, product):
    with pytest.raises(NotLinkedError):
        run(delivery.deliver(courier, "500100", product))


def test_unexpected_courier_errors_become_delivery_errors(run, product):
    links.link("500100", "900")
    with pytest.raises(DeliveryError):
        run(delivery.deliver(ExplodingCourier(), "500100", product))
