"""
Order fulfillment with a queue worker, a signal and a compensating rollback.

The workflow charges the card, reserves stock, then waits up to five seconds
for a "shipped" signal. Without one it refunds and releases the stock.

Run with:
    python examples/order_fulfillment.py
"""

import asyncio
import logging
from dataclasses import dataclass

from pydurable import (
    DurableConfig,
    DurableService,
    InMemoryQueue,
    SignalId,
    SqliteStore,
    current_context,
    durable_task,
)


@dataclass
class ShipmentInfo:
    carrier: str
    tracking: str


Shipped: SignalId[ShipmentInfo] = SignalId("shipped")


def charge_card(order):
    print(f"  charging {order['amount']} for order {order['id']}")
    return {"receipt": f"r-{order['id']}"}


def refund(order):
    print(f"  refunding order {order['id']}")


def reserve_stock(order):
    print(f"  reserving {order['sku']}")


def release_stock(order):
    print(f"  releasing {order['sku']}")


@durable_task("fulfill-order")
async def fulfill_order(order):
    ctx = current_context()

    receipt = await ctx.step("charge").up(lambda: charge_card(order)).down(lambda: refund(order))
    await ctx.step("reserve").up(lambda: reserve_stock(order)).down(lambda: release_stock(order))

    outcome = await ctx.wait_for_signal(Shipped, timeout_ms=5000)
    if outcome.kind == "timeout":
        await ctx.rollback()
        return {"status": "cancelled", "receipt": receipt["receipt"]}

    await ctx.note("shipped", {"tracking": outcome.payload.tracking})
    return {"status": "shipped", "tracking": outcome.payload.tracking}


async def main():
    logging.basicConfig(level=logging.INFO)

    store = SqliteStore("data/orders.db")
    config = DurableConfig().with_polling(interval_ms=100)
    service = DurableService(
        store, queue=InMemoryQueue(prefetch=4), tasks=[fulfill_order], config=config
    )

    try:
        async with service:
            worker = await service.start_worker()

            shipped = await service.start(
                fulfill_order, {"id": 1, "sku": "book", "amount": 20}, idempotency_key="order-1"
            )
            abandoned = await service.start(
                fulfill_order, {"id": 2, "sku": "lamp", "amount": 45}, idempotency_key="order-2"
            )

            await asyncio.sleep(0.5)
            await service.signal(shipped, Shipped, ShipmentInfo("acme", "TRK-1"))

            print("order 1:", await service.wait(shipped, timeout_ms=10_000))
            print("order 2:", await service.wait(abandoned, timeout_ms=10_000))

            await worker.shutdown()
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
