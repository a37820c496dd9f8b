from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from . import audit
from .auth_models import AuditAction, Profile
from .db import db_session
from .exceptions import NotFoundError, ValidationError
from .models import InventoryItem, InventoryTransaction, StockMovement

logger = logging.getLogger(__name__)


def item_flat(i: InventoryItem) -> dict:
    return {
        "id": i.id,
        "name": i.name,
        "sku": i.sku,
        "unit": i.unit,
        "cost": i.cost,
        "current_stock": i.current_stock,
        "min_stock": i.min_stock,
        "is_low": i.current_stock <= i.min_stock,
    }


def create_item(
    name: str,
    sku: str | None = None,
    unit: str = "piezas",
    cost: Decimal = Decimal("0"),
    min_stock: Decimal = Decimal("5"),
    actor: Profile | None = None,
) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("El nombre del artículo es obligatorio.")
    if cost < 0 or min_stock < 0:
        raise ValidationError("Costo y stock mínimo no pueden ser negativos.")

    with db_session() as s:
        item = InventoryItem(name=name, sku=sku, unit=unit or "piezas", cost=cost, min_stock=min_stock)
        s.add(item)
        s.flush()
        audit.record(s, actor, AuditAction.CREATE, "inventory_items", item.id, new_data={"name": name})
        return item.id


def list_items(low_only: bool = False) -> list[dict]:
    with db_session() as s:
        q = select(InventoryItem).order_by(InventoryItem.name)
        if low_only:
            q = q.where(InventoryItem.current_stock <= InventoryItem.min_stock)
        return [item_flat(i) for i in s.scalars(q)]


def low_stock() -> list[dict]:
    return list_items(low_only=True)


def move_stock(
    item_id: str,
    movement: StockMovement,
    quantity: Decimal,
    notes: str | None = None,
    actor: Profile | None = None,
) -> dict:
    """
    IN suma, OUT resta (sin dejar stock negativo), ADJUST fija el conteo físico.
    Cada movimiento queda en inventory_transactions.
    """
    quantity = Decimal(quantity)
    if movement == StockMovement.ADJUST:
        if quantity < 0:
            raise ValidationError("El conteo no puede ser negativo.")
    elif quantity <= 0:
        raise ValidationError("La cantidad debe ser mayor a cero.")

    with db_session() as s:
        item = s.get(InventoryItem, item_id)
        if not item:
            raise NotFoundError("Artículo no encontrado.")

        old = item.current_stock
        if movement == StockMovement.IN:
            item.current_stock = old + quantity
        elif movement == StockMovement.OUT:
            if quantity > old:
                raise ValidationError(f"Stock insuficiente: hay {old} {item.unit}.")
            item.current_stock = old - quantity
        else:
            item.current_stock = quantity

        s.add(
            InventoryTransaction(
                item_id=item.id,
                type=movement,
                quantity=quantity,
                notes=notes,
                user_id=actor.id if actor else None,
            )
        )
        if item.current_stock <= item.min_stock:
            logger.warning("Stock bajo: %s (%s %s)", item.name, item.current_stock, item.unit)
        return item_flat(item)


def list_transactions(item_id: str, limit: int = 100) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(InventoryTransaction)
            .where(InventoryTransaction.item_id == item_id)
            .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
            .limit(limit)
        )
        return [
            {
                "id": t.id,
                "type": t.type.value,
                "quantity": t.quantity,
                "notes": t.notes,
                "user_id": t.user_id,
                "created_at": t.created_at.isoformat(),
            }
            for t in rows
        ]
