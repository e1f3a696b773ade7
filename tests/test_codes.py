import threading
from datetime import timedelta

import pytest

import codes
import config
from errors import NotFoundError, ValidationError


def test_issue_and_exchange_once():
    codes.issue_code("500100", "482913")
    assert codes.is_live("482913")

    assert codes.exchange_code("482913", "900") == "500100"
    assert not codes.is_live("482913")

    with pytest.raises(NotFoundError):
        codes.exchange_code("482913", "900")


def test_numeric_ids_are_stored_as_strings():
    codes.issue_code(500100, 482913)
    assert codes.exchange_code("482913", 900) == "500100"


@pytest.mark.parametrize("bad", ["12345", "1234567", "abcdef", "12 345"])
def test_issue_rejects_malformed_codes(bad):
    with pytest.raises(ValidationError):
        codes.issue_code("500100", bad)


def test_issue_requires_user_id():
    with pytest.raises(ValidationError):
        codes.issue_code("", "482913")


def test_reissue_overwrites_owner():
    codes.issue_code("1", "111111")
    codes.issue_code("2", "111111")
    assert codes.exchange_code("111111", "900") == "2"


def test_expired_code_is_not_exchangeable(monkeypatch):
    real_now = codes._now()
    codes.issue_code("500100", "482913")

    later = real_now + timedelta(seconds=config.CODE_TTL_SECONDS + 1)
    monkeypatch.setattr(codes, "_now", lambda: later)

    assert not codes.is_live("482913")
    with pytest.raises(NotFoundError):
        codes.exchange_code("482913", "900")


def test_code_within_ttl_still_works(monkeypatch):
    real_now = codes._now()
    codes.issue_code("500100", "482913")
    monkeypatch.setattr(codes, "_now", lambda: real_now + timedelta(seconds=config.CODE_TTL_SECONDS - 5))
    assert codes.exchange_code("482913", "900") == "500100"


def test_unknown_code():
    with pytest.raises(NotFoundError):
        codes.exchange_code("000000", "900")


def test_invalidate_codes_for_account():
    codes.issue_code("500100", "111111")
    codes.issue_code("500100", "222222")
    codes.issue_code("777", "333333")

    assert codes.invalidate_codes("500100") == 2
    assert not codes.is_live("111111")
    assert codes.is_live("333333")


def test_racing_exchanges_have_one_winner():
    codes.issue_code("500100", "482913")
    barrier = threading.Barrier(2)
    winners, losers = [], []

    def exchange(chat_id):
        barrier.wait()
        try:
            winners.append(codes.exchange_code("482913", chat_id))
        except NotFoundError:
            losers.append(chat_id)

    threads = [threading.Thread(target=exchange, args=(cid,)) for cid in ("900", "901")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert winners == ["500100"]
    assert len(losers) == 1
