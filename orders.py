"""
Order placement.

Turns a cart into a priced, persisted order:

1. reject an empty cart or a missing shipping address;
2. load every referenced product, aborting with NotFound if any is missing;
3. price each line from the stored product, never from the request;
4. store the shipping address for the caller;
5. store the order with its embedded items.

Steps 4 and 5 run in one unit of work, so either the address and the order
both exist afterwards or neither does. Stock is neither checked nor
decremented.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pymongo.errors import PyMongoError

from auth import Identity
from database import Repository, object_id
from errors import InvalidInput, NotFound, Unexpected
from schemas import Address, Order, OrderItem, OrderItemIn, OrderStatus

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def price_items(items: Sequence[OrderItemIn], products: Dict[str, Dict[str, Any]]):
    """Snapshot prices from the loaded products and total them up."""
    total = Decimal("0")
    priced: List[OrderItem] = []
    for item in items:
        oid = object_id(item.product_id)
        product = products.get(str(oid)) if oid else None
        if product is None:
            raise NotFound(f"Product not found: {item.product_id}")
        price = Decimal(str(product["price"]))
        total += price * item.quantity
        priced.append(
            OrderItem(
                product_id=str(product["_id"]),
                variant_id=item.variant_id,
                quantity=item.quantity,
                price=float(price),
            )
        )
    return priced, total.quantize(CENTS)


def place_order(
    repo: Repository,
    identity: Identity,
    items: Sequence[OrderItemIn],
    shipping_address: Optional[Address],
    payment_intent_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not items:
        raise InvalidInput("Order must contain at least one item")
    if shipping_address is None:
        raise InvalidInput("Shipping address is required")

    products = repo.find_by_ids("product", (item.product_id for item in items))
    try:
        priced, total = price_items(items, products)
    except NotFound as exc:
        logger.info("order_rejected", user_id=identity.id, reason=exc.message)
        raise

    try:
        with repo.transaction() as unit:
            address = repo.insert("address", dict(shipping_address.to_document(), userId=identity.id), unit=unit)
            order = Order(
                user_id=identity.id,
                status=OrderStatus.PENDING,
                total=float(total),
                payment_intent_id=payment_intent_id,
                shipping_address_id=str(address["_id"]),
                items=priced,
            )
            stored = repo.insert("order", order.to_document(), unit=unit)
    except PyMongoError as exc:
        logger.exception("order_placement_failed", user_id=identity.id)
        raise Unexpected("Failed to create order") from exc

    logger.info(
        "order_placed",
        order_id=str(stored["_id"]),
        user_id=identity.id,
        total=str(total),
        item_count=len(priced),
    )
    return stored
