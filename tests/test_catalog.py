import pytest
from pymongo.errors import AutoReconnect

import catalog
import ledger
from conftest import RacingCollection
from errors import ConflictError, NotFoundError, ValidationError


def test_create_and_get(product_fields):
    pid = catalog.create_product(product_fields(hub="orion"))
    p = catalog.get_product(pid)

    assert p["id"] == pid
    assert p["hub"] == "Orion"
    assert p["file_data"] == b"sword-bytes"
    assert catalog.find_by_external_id("9001")["id"] == pid


def test_duplicate_external_id_conflicts(product_fields):
    catalog.create_product(product_fields())
    with pytest.raises(ConflictError):
        catalog.create_product(product_fields(name="Other"))


@pytest.mark.parametrize("missing", ["hub", "name", "description", "image_id", "external_product_id", "file_name"])
def test_create_requires_every_field(product_fields, missing):
    with pytest.raises(ValidationError):
        catalog.create_product(product_fields(**{missing: "  "}))


def test_create_requires_payload(product_fields):
    with pytest.raises(ValidationError):
        catalog.create_product(product_fields(file_data=b""))


def test_unknown_hub_rejected(product_fields):
    with pytest.raises(ValidationError):
        catalog.create_product(product_fields(hub="Atlantis"))


def test_list_products_filters_by_hub_and_omits_payload(product_fields):
    catalog.create_product(product_fields())
    catalog.create_product(product_fields(hub="Nova", name="Shield", external_product_id="9002"))

    everything = catalog.list_products()
    assert [p["name"] for p in everything] == ["Shield", "Sword"]
    assert all("file_data" not in p for p in everything)

    nova = catalog.list_products("nova")
    assert [p["name"] for p in nova] == ["Shield"]


def test_get_product_bad_id():
    with pytest.raises(NotFoundError):
        catalog.get_product("not-an-object-id")
    with pytest.raises(NotFoundError):
        catalog.get_product("65f0c0ffee00000000000000")


def test_update_single_field(product_fields):
    pid = catalog.create_product(product_fields())
    updated = catalog.update_product(pid, "Name", "Great Sword")
    assert updated["name"] == "Great Sword"
    assert updated["description"] == "A sharp sword"


def test_update_file_replaces_name_and_bytes(product_fields):
    pid = catalog.create_product(product_fields())
    updated = catalog.update_product(pid, "file", ("sword-v2.rbxm", b"v2"))
    assert updated["file_name"] == "sword-v2.rbxm"
    assert updated["file_data"] == b"v2"


def test_update_rejects_unknown_field(product_fields):
    pid = catalog.create_product(product_fields())
    with pytest.raises(ValidationError):
        catalog.update_product(pid, "price", "10")


def test_update_external_id_conflict(product_fields):
    catalog.create_product(product_fields())
    other = catalog.create_product(product_fields(name="Shield", external_product_id="9002"))
    with pytest.raises(ConflictError):
        catalog.update_product(other, "external_product_id", "9001")
    # keeping its own id is fine
    assert catalog.update_product(other, "external_product_id", "9002")["external_product_id"] == "9002"


def test_remove_cascades_entitlements(product_fields):
    pid = catalog.create_product(product_fields())
    ledger.grant("500100", pid)
    ledger.grant("500200", pid)

    removed = catalog.remove_product(pid)

    assert removed["id"] == pid
    assert ledger.list_owners(pid) == []
    assert catalog.find_by_external_id("9001") is None
    with pytest.raises(NotFoundError):
        catalog.remove_product(pid)


def test_product_names_skips_unknown_ids(product_fields):
    pid = catalog.create_product(product_fields())
    assert catalog.product_names([pid, "junk", "65f0c0ffee00000000000000"]) == {pid: "Sword"}


def test_external_id_taken_excludes_own_row(product_fields):
    pid = catalog.create_product(product_fields(external_product_id="DP1"))
    other = catalog.create_product(product_fields(name="Shield", external_product_id="DP2"))

    assert catalog.external_id_taken("DP1")
    assert not catalog.external_id_taken("DP1", exclude_product_id=pid)
    assert catalog.external_id_taken("DP1", exclude_product_id=other)
    assert not catalog.external_id_taken("DP3")


def test_create_that_loses_insert_race_conflicts(monkeypatch, db, product_fields):
    real = db["products"]
    monkeypatch.setattr(catalog, "_products", lambda: RacingCollection(real, "insert_one"))

    with pytest.raises(ConflictError):
        catalog.create_product(product_fields())


def test_cascade_retries_then_succeeds(monkeypatch, product_fields):
    pid = catalog.create_product(product_fields())
    ledger.grant("500100", pid)
    real_cascade = ledger.remove_all_for_product
    calls, sleeps = [], []

    def flaky(product_id):
        calls.append(product_id)
        if len(calls) == 1:
            raise AutoReconnect("primary stepped down")
        return real_cascade(product_id)

    monkeypatch.setattr(ledger, "remove_all_for_product", flaky)
    monkeypatch.setattr(catalog.time, "sleep", sleeps.append)

    catalog.remove_product(pid)

    assert len(calls) == 2
    assert len(sleeps) == 1
    assert ledger.list_owners(pid) == []


def test_cascade_gives_up_but_product_stays_removed(monkeypatch, product_fields):
    pid = catalog.create_product(product_fields())
    ledger.grant("500100", pid)

    def down(product_id):
        raise AutoReconnect("no primary")

    monkeypatch.setattr(ledger, "remove_all_for_product", down)
    monkeypatch.setattr(catalog.time, "sleep", lambda s: None)

    assert catalog.remove_product(pid)["id"] == pid
    with pytest.raises(NotFoundError):
        catalog.get_product(pid)
