import logging
import secrets
import time
from enum import Enum
from typing import List, Optional

from cart import CartStore
from database import DataService
from errors import DataServiceError
from schemas import CartItem, CartTotals, CheckoutForm, Order, OrderCreate, OrderItem

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "ISQ"
FREE_SHIPPING_THRESHOLD = 50
FLAT_SHIPPING = 9.99
TAX_RATE = 0.08

CART_ROUTE = "/cart"

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


# -------------------- Totals & numbering --------------------

def compute_totals(subtotal: float) -> CartTotals:
    shipping = 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    tax = round(subtotal * TAX_RATE, 2)
    subtotal = round(subtotal, 2)
    return CartTotals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        total=round(subtotal + shipping + tax, 2),
    )


def free_shipping_remaining(subtotal: float) -> float:
    """How much more the shopper needs to spend to get free shipping."""
    if subtotal < FREE_SHIPPING_THRESHOLD:
        return round(FREE_SHIPPING_THRESHOLD - subtotal, 2)
    return 0.0


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number(timestamp_ms: Optional[int] = None) -> str:
    # human-readable only; collisions are possible and not checked
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{ORDER_NUMBER_PREFIX}-{to_base36(timestamp_ms)}-{suffix}"


def build_order_items(items: List[CartItem]) -> List[OrderItem]:
    return [
        OrderItem(
            product_id=item.product.id,
            title=item.product.title,
            quantity=item.quantity,
            price=item.product.price,
            image=item.product.images[0] if item.product.images else None,
        )
        for item in items
    ]


# -------------------- Orchestrator --------------------

class CheckoutState(str, Enum):
    EDITING = "editing"
    SUBMITTING = "submitting"
    COMPLETE = "complete"


class CheckoutOrchestrator:
    """Turns the cart plus a shipping form into one pending order.

    The cart is cleared only after the order was written. A failed write
    leaves the cart alone and sets ``error``; submitting again retries.
    Quantities come from the cart's product snapshots; live stock is not
    re-checked.
    """

    FAILURE_MESSAGE = "Failed to create order. Please try again."

    def __init__(self, cart: CartStore, data: DataService):
        self.cart = cart
        self._data = data
        self.state = CheckoutState.EDITING
        self.error: Optional[str] = None
        self.order_number: Optional[str] = None
        self.order: Optional[Order] = None

    @property
    def totals(self) -> CartTotals:
        return compute_totals(self.cart.get_subtotal())

    def enter(self) -> Optional[str]:
        """Return the route to redirect to, or None when checkout can proceed."""
        if self.cart.is_empty and self.state != CheckoutState.COMPLETE:
            return CART_ROUTE
        return None

    def submit(self, form: CheckoutForm) -> Optional[Order]:
        if self.cart.is_empty:
            return None
        self.state = CheckoutState.SUBMITTING
        self.error = None

        totals = self.totals
        order_number = generate_order_number()
        payload = OrderCreate(
            order_number=order_number,
            customer_name=form.customer_name,
            customer_email=form.customer_email,
            shipping_address=form.shipping_address(),
            items=build_order_items(self.cart.items),
            subtotal=totals.subtotal,
            shipping=totals.shipping,
            tax=totals.tax,
            total=totals.total,
            status="pending",
        )
        try:
            record = self._data.insert("orders", payload.model_dump(mode="json"))
        except DataServiceError:
            logger.error("Order creation failed for %s", order_number, exc_info=True)
            self.error = self.FAILURE_MESSAGE
            self.state = CheckoutState.EDITING
            return None

        self.order = Order(**record)
        self.order_number = order_number
        self.state = CheckoutState.COMPLETE
        self.cart.clear_cart()
        logger.info("Order %s created with %d line(s), total %.2f", order_number, len(payload.items), totals.total)
        return self.order
