import json

import httpx
import pytest

import config
import downtime
from errors import UpstreamError, ValidationError


@pytest.fixture
def roblox(monkeypatch):
    monkeypatch.setattr(config, "ROBLOX_UNIVERSE_ID", "42")
    monkeypatch.setattr(config, "ROBLOX_API_KEY", "secret")
    calls = []

    def make(status_code=200):
        def handler(request):
            calls.append(request)
            return httpx.Response(status_code)
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    make.calls = calls
    return make


def test_defaults_to_off():
    assert downtime.get_downtime() is False
    assert downtime.flag_info()["updatedAt"] is None


def test_last_write_wins(run):
    assert run(downtime.set_downtime(True, "admin")) is True
    assert downtime.get_downtime() is True
    assert run(downtime.set_downtime(False, "other")) is False
    assert downtime.get_downtime() is False
    assert downtime.flag_info()["updatedBy"] == "other"


def test_rejects_non_bool(run):
    with pytest.raises(ValidationError):
        run(downtime.set_downtime("yes", "admin"))


def test_broadcast_skipped_when_unconfigured(run, monkeypatch):
    monkeypatch.setattr(config, "ROBLOX_API_KEY", "")
    assert run(downtime.broadcast_downtime(True)) is False


def test_broadcast_posts_to_topic(run, roblox):
    client = roblox()
    assert run(downtime.broadcast_downtime(True, client=client)) is True

    req = roblox.calls[0]
    assert req.url.path == f"/messaging-service/v1/universes/42/topics/{config.DOWNTIME_TOPIC}"
    assert req.headers["x-api-key"] == "secret"
    assert json.loads(json.loads(req.content)["message"]) == {"enabled": True}


def test_broadcast_error_is_upstream_error(run, roblox):
    with pytest.raises(UpstreamError):
        run(downtime.broadcast_downtime(True, client=roblox(500)))


def test_failed_broadcast_still_stores_flag(run, roblox):
    assert run(downtime.set_downtime(True, "admin", client=roblox(503))) is True
    assert downtime.get_downtime() is True


def test_set_returns_value_it_stored_despite_later_writer(run, monkeypatch, db):
    monkeypatch.setattr(config, "ROBLOX_UNIVERSE_ID", "42")
    monkeypatch.setattr(config, "ROBLOX_API_KEY", "secret")

    def handler(request):
        # another admin flips the flag while this broadcast is in flight
        db["flags"].update_one({"_id": downtime.FLAG_KEY}, {"$set": {"enabled": False}})
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    assert run(downtime.set_downtime(True, "admin", client=client)) is True
    assert downtime.get_downtime() is False
