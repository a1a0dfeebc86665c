import logging
from typing import Dict, List, Optional

from pydantic import TypeAdapter, ValidationError
from pymongo.errors import PyMongoError

from errors import DataServiceError
from schemas import CartItem, Product

logger = logging.getLogger(__name__)

CART_STORAGE_KEY = "cart"

_cart_adapter = TypeAdapter(List[CartItem])


# -------------------- Key/value storage --------------------

class MemoryStorage:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class DocumentStorage:
    """Key/value storage for one browser session, kept as a single document."""

    def __init__(self, collection, session_id: str):
        self._collection = collection
        self.session_id = session_id

    def get_item(self, key: str) -> Optional[str]:
        try:
            doc = self._collection.find_one({"_id": self.session_id}, {key: 1})
        except PyMongoError as e:
            raise DataServiceError(f"storage read failed: {e}") from e
        return (doc or {}).get(key)

    def set_item(self, key: str, value: str) -> None:
        try:
            self._collection.update_one({"_id": self.session_id}, {"$set": {key: value}}, upsert=True)
        except PyMongoError as e:
            raise DataServiceError(f"storage write failed: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            self._collection.update_one({"_id": self.session_id}, {"$unset": {key: ""}})
        except PyMongoError as e:
            raise DataServiceError(f"storage write failed: {e}") from e


# -------------------- Cart store --------------------

class CartStore:
    """Product -> quantity pairs for one shopper, in insertion order.

    Every mutation re-serialises the whole list under ``CART_STORAGE_KEY``.
    Product entries are snapshots taken when the item was added.
    """

    def __init__(self, storage=None):
        self._storage = storage if storage is not None else MemoryStorage()
        self._items: List[CartItem] = self._restore()

    def _restore(self) -> List[CartItem]:
        raw = self._storage.get_item(CART_STORAGE_KEY)
        if not raw:
            return []
        try:
            return _cart_adapter.validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cart data", exc_info=True)
            return []

    def _persist(self) -> None:
        self._storage.set_item(CART_STORAGE_KEY, _cart_adapter.dump_json(self._items).decode())

    def _find(self, product_id: str) -> Optional[CartItem]:
        return next((i for i in self._items if i.product.id == product_id), None)

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    def quantity_of(self, product_id: str) -> int:
        item = self._find(product_id)
        return item.quantity if item else 0

    def add_item(self, product: Product, quantity: int = 1) -> None:
        if quantity <= 0:
            return
        existing = self._find(product.id)
        if existing:
            existing.quantity += quantity
        else:
            self._items.append(CartItem(product=product, quantity=quantity))
        self._persist()

    def update_quantity(self, product_id: str, quantity: int) -> None:
        item = self._find(product_id)
        if not item:
            return
        # clamped to the stock snapshot; nothing left to hold removes the line
        quantity = min(quantity, item.product.stock_quantity)
        if quantity <= 0:
            self.remove_item(product_id)
            return
        item.quantity = quantity
        self._persist()

    def increment(self, product_id: str) -> None:
        item = self._find(product_id)
        if item and item.quantity < item.product.stock_quantity:
            self.update_quantity(product_id, item.quantity + 1)

    def decrement(self, product_id: str) -> None:
        item = self._find(product_id)
        if item:
            # stepping down from 1 removes the line
            self.update_quantity(product_id, item.quantity - 1)

    def remove_item(self, product_id: str) -> None:
        self._items = [i for i in self._items if i.product.id != product_id]
        self._persist()

    def clear_cart(self) -> None:
        self._items = []
        self._persist()

    def get_subtotal(self) -> float:
        return sum(i.product.price * i.quantity for i in self._items)
