import asyncio
import logging

from reservation_engine.database import get_session, init_db
from reservation_engine.models import InventoryItem, ItemKind

logger = logging.getLogger(__name__)


async def seed_inventory():
    await init_db()
    async for session in get_session():
        if await session.get(InventoryItem, "book-1-copy-1"):
            logger.info("Inventory already seeded.")
            continue

        items = [
            InventoryItem(id="book-1-copy-1", kind=ItemKind.COPY, capacity=1, reserved_units=0),
            InventoryItem(id="book-1-copy-2", kind=ItemKind.COPY, capacity=1, reserved_units=0),
            InventoryItem(id="book-2-copy-1", kind=ItemKind.COPY, capacity=0, reserved_units=0),  # withdrawn copy
            InventoryItem(id="product-A", kind=ItemKind.STOCK_UNIT, capacity=10, reserved_units=0, unit_price=12.5),
            InventoryItem(id="product-B", kind=ItemKind.STOCK_UNIT, capacity=5, reserved_units=0, unit_price=30.0),
            InventoryItem(id="ebook-1", kind=ItemKind.STOCK_UNIT, capacity=None, reserved_units=0,
                          unit_price=9.99, digital=True),
        ]
        session.add_all(items)
        await session.commit()
        logger.info("Inventory seeded successfully.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed_inventory())
