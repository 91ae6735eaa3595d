"""
Inventory Ledger

Authoritative capacity counters for loanable copies and sellable stock. The
counters change only through reserve / release / commit; each runs as its
own database transaction with a conditional UPDATE, and calls on the same
item are serialized in-process.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reservation_engine.exceptions import (
    AlreadyCommitted,
    InvalidState,
    NotFound,
    OutOfStock,
    ValidationError,
)
from reservation_engine.locks import KeyedLocks
from reservation_engine.models import InventoryItem, ItemKind, LedgerToken, TokenState, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationToken:
    token_id: str
    item_id: str
    quantity: int


class InventoryLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: Optional[KeyedLocks] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks or KeyedLocks()
        self.clock = clock

    async def register_item(
        self,
        item_id: str,
        kind: ItemKind,
        capacity: Optional[int],
        unit_price: float = 0.0,
        digital: bool = False,
    ) -> InventoryItem:
        if kind is ItemKind.COPY and capacity not in (0, 1):
            raise ValidationError("A COPY item has capacity 0 or 1")
        if capacity is not None and capacity < 0:
            raise ValidationError("Capacity must be non-negative")
        if unit_price < 0:
            raise ValidationError("Unit price must be non-negative")

        async with self.locks.hold(item_id):
            async with self.session_factory() as session:
                if await session.get(InventoryItem, item_id):
                    raise InvalidState(f"Item {item_id} is already registered")
                item = InventoryItem(
                    id=item_id,
                    kind=kind,
                    capacity=capacity,
                    reserved_units=0,
                    unit_price=unit_price,
                    digital=digital,
                )
                session.add(item)
                await session.commit()
        logger.info(f"Registered {kind.value} item {item_id} with capacity {capacity}")
        return item

    async def get_item(self, item_id: str) -> InventoryItem:
        async with self.session_factory() as session:
            item = await session.get(InventoryItem, item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        return item

    async def availability(self, item_id: str) -> dict:
        item = await self.get_item(item_id)
        available = None if item.capacity is None else item.capacity - item.reserved_units
        return {
            "item_id": item.id,
            "kind": item.kind,
            "capacity": item.capacity,
            "reserved_units": item.reserved_units,
            "available_units": available,
        }

    async def reserve(self, item_id: str, quantity: int, owner_ref: Optional[str] = None) -> ReservationToken:
        """Atomically claim ``quantity`` units of ``item_id``.

        Raises OutOfStock when ``capacity - reserved_units < quantity``.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")

        async with self.locks.hold(item_id):
            async with self.session_factory() as session:
                item = await session.get(InventoryItem, item_id)
                if item is None:
                    raise NotFound(f"Item {item_id} not found")

                result = await session.execute(
                    update(InventoryItem)
                    .where(
                        InventoryItem.id == item_id,
                        or_(
                            InventoryItem.capacity.is_(None),
                            InventoryItem.capacity - InventoryItem.reserved_units >= quantity,
                        ),
                    )
                    .values(reserved_units=InventoryItem.reserved_units + quantity)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    available = None if item.capacity is None else item.capacity - item.reserved_units
                    logger.info(f"Reserve of {quantity} x {item_id} refused, {available} available")
                    raise OutOfStock(item_id, quantity, available)

                token = LedgerToken(
                    id=str(uuid4()),
                    item_id=item_id,
                    quantity=quantity,
                    state=TokenState.HELD,
                    owner_ref=owner_ref,
                    created_at=self.clock(),
                )
                session.add(token)
                await session.commit()

        logger.info(f"Reserved {quantity} x {item_id} (token {token.id})")
        return ReservationToken(token_id=token.id, item_id=item_id, quantity=quantity)

    async def load_token(self, token_id: str) -> ReservationToken:
        async with self.session_factory() as session:
            row = await session.get(LedgerToken, token_id)
        if row is None:
            raise NotFound(f"Ledger token {token_id} not found")
        return ReservationToken(token_id=row.id, item_id=row.item_id, quantity=row.quantity)

    async def token_state(self, token_id: str) -> TokenState:
        async with self.session_factory() as session:
            row = await session.get(LedgerToken, token_id)
        if row is None:
            raise NotFound(f"Ledger token {token_id} not found")
        return row.state

    async def release(self, token: ReservationToken) -> bool:
        """Give the token's units back.

        Returns False when the token was already released (no-op). Raises
        AlreadyCommitted when the units were permanently consumed.
        """
        async with self.locks.hold(token.item_id):
            async with self.session_factory() as session:
                row = await session.get(LedgerToken, token.token_id)
                if row is None:
                    raise NotFound(f"Ledger token {token.token_id} not found")

                result = await session.execute(
                    update(LedgerToken)
                    .where(LedgerToken.id == row.id, LedgerToken.state == TokenState.HELD)
                    .values(state=TokenState.RELEASED, settled_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    if row.state is TokenState.COMMITTED:
                        raise AlreadyCommitted(f"Token {row.id} was already committed")
                    logger.debug(f"Token {row.id} already released")
                    return False

                await session.execute(
                    update(InventoryItem)
                    .where(InventoryItem.id == row.item_id)
                    .values(reserved_units=InventoryItem.reserved_units - row.quantity)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        logger.info(f"Released {row.quantity} x {row.item_id} (token {row.id})")
        return True

    async def commit(self, token: ReservationToken) -> bool:
        """Make the reservation permanent; the counter is left as is.

        Returns False when the token was already committed (no-op).
        """
        async with self.locks.hold(token.item_id):
            async with self.session_factory() as session:
                row = await session.get(LedgerToken, token.token_id)
                if row is None:
                    raise NotFound(f"Ledger token {token.token_id} not found")

                result = await session.execute(
                    update(LedgerToken)
                    .where(LedgerToken.id == row.id, LedgerToken.state == TokenState.HELD)
                    .values(state=TokenState.COMMITTED, settled_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    if row.state is TokenState.RELEASED:
                        raise InvalidState(f"Token {row.id} was already released")
                    return False
                await session.commit()

        logger.info(f"Committed {row.quantity} x {row.item_id} (token {row.id})")
        return True
