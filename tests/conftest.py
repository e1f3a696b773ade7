import asyncio

import mongomock
import pytest
from pymongo.errors import DuplicateKeyError

import store
from errors import DeliveryError


class FakeCourier:
    """Records deliveries instead of talking to Discord."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.logs = []
        self.fail_for = set(str(x) for x in fail_for)

    async def send_product(self, chat_account_id, product):
        if str(chat_account_id) in self.fail_for:
            raise DeliveryError(f"Discord user {chat_account_id} does not accept DMs")
        self.sent.append((str(chat_account_id), product["id"], product["file_name"], product["file_data"]))
        return f"dm:{chat_account_id}"

    async def post_log(self, title, fields, color=0):
        self.logs.append((title, fields))


class RacingCollection:
    """Collection wrapper whose `method` loses to a concurrent writer: `before` runs, then DuplicateKeyError."""

    def __init__(self, inner, method, before=None):
        self._inner = inner
        self._method = method
        self._before = before

    def __getattr__(self, name):
        if name != self._method:
            return getattr(self._inner, name)

        def lose(*args, **kwargs):
            if self._before:
                self._before()
            raise DuplicateKeyError("E11000 duplicate key error")
        return lose


@pytest.fixture(autouse=True)
def db():
    client = mongomock.MongoClient(tz_aware=True)
    yield store.use_database(client["orion_test"])
    client.close()


@pytest.fixture
def courier():
    return FakeCourier()


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def product_fields():
    def make(**overrides):
        fields = {
            "hub": "Orion",
            "name": "Sword",
            "description": "A sharp sword",
            "image_id": "123",
            "external_product_id": "9001",
            "file_name": "sword.rbxm",
            "file_data": b"sword-bytes",
        }
        fields.update(overrides)
        return fields
    return make
