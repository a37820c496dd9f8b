from __future__ import annotations

from decimal import Decimal

import pytest

from dental_backend import inventory
from dental_backend.exceptions import NotFoundError, ValidationError
from dental_backend.models import StockMovement


@pytest.fixture
def gloves(admin) -> str:
    return inventory.create_item("Guantes de nitrilo", sku="GN-M", unit="cajas", min_stock=Decimal("3"), actor=admin)


def test_in_out_and_adjust(gloves, cashier):
    assert inventory.move_stock(gloves, StockMovement.IN, Decimal("10"), actor=cashier)["current_stock"] == Decimal("10")
    assert inventory.move_stock(gloves, StockMovement.OUT, Decimal("4"))["current_stock"] == Decimal("6")
    assert inventory.move_stock(gloves, StockMovement.ADJUST, Decimal("5"), notes="Conteo físico")["current_stock"] == Decimal("5")

    moves = inventory.list_transactions(gloves)
    assert [m["type"] for m in moves] == ["ADJUST", "OUT", "IN"]
    assert moves[0]["notes"] == "Conteo físico"


def test_out_cannot_leave_negative_stock(gloves):
    inventory.move_stock(gloves, StockMovement.IN, Decimal("2"))
    with pytest.raises(ValidationError, match="Stock insuficiente"):
        inventory.move_stock(gloves, StockMovement.OUT, Decimal("3"))
    assert inventory.list_items()[0]["current_stock"] == Decimal("2")
    assert len(inventory.list_transactions(gloves)) == 1


@pytest.mark.parametrize(
    "movement, quantity",
    [(StockMovement.IN, Decimal("0")), (StockMovement.OUT, Decimal("-1")), (StockMovement.ADJUST, Decimal("-1"))],
)
def test_invalid_quantities(gloves, movement, quantity):
    with pytest.raises(ValidationError):
        inventory.move_stock(gloves, movement, quantity)


def test_low_stock_flag(gloves, admin, caplog):
    anesthesia = inventory.create_item("Anestesia", min_stock=Decimal("2"), actor=admin)
    inventory.move_stock(anesthesia, StockMovement.IN, Decimal("20"))
    inventory.move_stock(gloves, StockMovement.IN, Decimal("4"))

    with caplog.at_level("WARNING", logger="dental_backend.inventory"):
        out = inventory.move_stock(gloves, StockMovement.OUT, Decimal("1"))
    assert out["is_low"] is True
    assert "Stock bajo" in caplog.text

    assert [i["id"] for i in inventory.low_stock()] == [gloves]


def test_unknown_item_and_bad_input():
    with pytest.raises(NotFoundError):
        inventory.move_stock("missing", StockMovement.IN, Decimal("1"))
    with pytest.raises(ValidationError):
        inventory.create_item("  ")


def test_inventory_api(client, auth, admin, cashier):
    r = client.post("/api/inventory", json={"name": "Resina A2", "min_stock": 1}, headers=auth(cashier))
    assert r.status_code == 403

    item_id = client.post("/api/inventory", json={"name": "Resina A2", "min_stock": 1}, headers=auth(admin)).json()["item_id"]
    r = client.post(f"/api/inventory/{item_id}/movements", json={"type": "OUT", "quantity": 1}, headers=auth(cashier))
    assert r.status_code == 400
