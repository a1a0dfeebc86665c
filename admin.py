import logging
import math
import re
import time
from datetime import datetime, time as dtime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional
from urllib.parse import quote

from auth import AdminSession
from database import DataService
from errors import AuthError, DataServiceError, StorageError, ValidationFailed
from schemas import Category, CategoryOption, OrderFilters, OrderItemSummary, OrderRecord, Product, ProductForm
from storage import ObjectStorage

logger = logging.getLogger(__name__)

Alert = Callable[[str], None]
Confirm = Callable[[str], bool]

RECENT_ORDERS_LIMIT = 3


def _log_alert(message: str) -> None:
    logger.warning("Admin alert: %s", message)


def _decline(message: str) -> bool:
    return False


class ScreenState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    MUTATING = "mutating"
    ERROR = "error"


class ImageUpload(NamedTuple):
    filename: str
    data: bytes
    content_type: Optional[str] = None


# -------------------- Helpers --------------------

def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.strip().lower()).strip("-")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def filter_orders(orders: Iterable[OrderRecord], filters: OrderFilters) -> List[OrderRecord]:
    """Filter an already-fetched order list; date bounds are whole UTC days."""
    filtered = list(orders)
    if filters.status:
        wanted = filters.status.lower()
        filtered = [o for o in filtered if o.status.lower() == wanted]
    if filters.customer:
        needle = filters.customer.lower()
        filtered = [o for o in filtered if needle in (o.customer_name or "").lower()]
    if filters.date_from:
        lower = datetime.combine(filters.date_from, dtime.min, tzinfo=timezone.utc)
        filtered = [o for o in filtered if _as_utc(o.created_at) >= lower]
    if filters.date_to:
        upper = datetime.combine(filters.date_to, dtime.max, tzinfo=timezone.utc)
        filtered = [o for o in filtered if _as_utc(o.created_at) <= upper]
    return filtered


def item_count(order: OrderRecord) -> int:
    return sum(item.effective_quantity for item in order.items)


# -------------------- Screens --------------------

class AdminScreen:
    """loading -> ready <-> mutating; failures pass through error back to ready."""

    def __init__(self, data: DataService, alert: Optional[Alert] = None, confirm: Optional[Confirm] = None):
        self._data = data
        self._alert = alert or _log_alert
        self._confirm = confirm or _decline
        self.state = ScreenState.LOADING

    def _fail(self, message: str) -> None:
        self.state = ScreenState.ERROR
        self._alert(message)
        self.state = ScreenState.READY

    def _delete(self, collection: str, record_id: str, failure_message: str) -> bool:
        self.state = ScreenState.MUTATING
        try:
            self._data.delete(collection, record_id)
        except DataServiceError:
            logger.error("Deleting %s %s failed", collection, record_id, exc_info=True)
            self._fail(failure_message)
            return False
        logger.info("Deleted %s %s", collection, record_id)
        self.load()
        return True

    def load(self) -> None:
        raise NotImplementedError


class OrdersScreen(AdminScreen):
    def __init__(self, data: DataService, alert: Optional[Alert] = None, confirm: Optional[Confirm] = None):
        super().__init__(data, alert, confirm)
        self.orders: List[OrderRecord] = []
        self.filters = OrderFilters()
        self.selected_items: Optional[List[OrderItemSummary]] = None

    def load(self) -> None:
        self.state = ScreenState.LOADING
        try:
            docs = self._data.select("orders", order_by="created_at", ascending=False)
            self.orders = [OrderRecord(**d) for d in docs]
        except DataServiceError:
            logger.error("Error fetching orders", exc_info=True)
            self._fail("Failed to load orders")
            return
        self.state = ScreenState.READY

    @property
    def filtered_orders(self) -> List[OrderRecord]:
        return filter_orders(self.orders, self.filters)

    @property
    def active_filter_count(self) -> int:
        return sum(1 for v in self.filters.model_dump().values() if v not in ("", None))

    def set_filters(self, filters: OrderFilters) -> List[OrderRecord]:
        self.filters = filters
        return self.filtered_orders

    def clear_filters(self) -> None:
        self.filters = OrderFilters()

    def show_items(self, order_id: str) -> List[OrderItemSummary]:
        order = next((o for o in self.orders if o.id == order_id), None)
        self.selected_items = list(order.items) if order else []
        return self.selected_items

    def close_items(self) -> None:
        self.selected_items = None

    def delete(self, order_id: str) -> bool:
        if not self._confirm("Are you sure you want to delete this order?"):
            return False
        return self._delete("orders", order_id, "Failed to delete order")


class ProductsScreen(AdminScreen):
    def __init__(self, data: DataService, storage: ObjectStorage, alert: Optional[Alert] = None,
                 confirm: Optional[Confirm] = None):
        super().__init__(data, alert, confirm)
        self._storage = storage
        self.products: List[Product] = []
        self.categories: List[CategoryOption] = []
        self.errors: Dict[str, str] = {}

    def load(self) -> None:
        self.state = ScreenState.LOADING
        try:
            docs = self._data.select("products", order_by="created_at", ascending=False)
            self.products = [Product(**d) for d in docs]
            self.categories = [CategoryOption(**c) for c in self._data.select("categories", fields=["id", "name"])]
        except DataServiceError:
            logger.error("Error fetching products", exc_info=True)
            self._fail("Failed to load products")
            return
        self.state = ScreenState.READY

    @staticmethod
    def form_for(product: Optional[Product] = None) -> ProductForm:
        if product is None:
            return ProductForm()
        return ProductForm(
            title=product.title,
            category_id=product.category_id or "",
            price=str(product.price),
            stock_quantity=str(product.stock_quantity),
            description=product.description or "",
            images=list(product.images),
        )

    @staticmethod
    def validate(form: ProductForm) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if not form.title.strip():
            errors["title"] = "Required"
        if not form.category_id:
            errors["category_id"] = "Required"
        try:
            price = float(form.price)
            if not math.isfinite(price) or price <= 0:
                errors["price"] = "Invalid"
        except ValueError:
            errors["price"] = "Invalid"
        try:
            if int(form.stock_quantity) < 0:
                errors["stock_quantity"] = "Invalid"
        except ValueError:
            errors["stock_quantity"] = "Invalid"
        return errors

    @staticmethod
    def build_payload(form: ProductForm) -> dict:
        title = form.title.strip()
        return {
            "title": title,
            "category_id": form.category_id,
            "price": float(form.price),
            "stock_quantity": int(form.stock_quantity),
            "description": form.description.strip(),
            "images": list(form.images),
            # regenerated on every save, so renaming a product moves its URL
            "slug": slugify(title),
        }

    def submit(self, form: ProductForm, editing_id: Optional[str] = None) -> Optional[dict]:
        self.errors = self.validate(form)
        if self.errors:
            raise ValidationFailed(self.errors)

        payload = self.build_payload(form)
        self.state = ScreenState.MUTATING
        try:
            if editing_id:
                record = self._data.update("products", editing_id, payload)
            else:
                record = self._data.insert("products", payload)
        except DataServiceError:
            logger.error("Saving product %r failed", payload["title"], exc_info=True)
            self._fail("Failed to save product")
            return None
        self.load()
        return record

    def delete(self, product_id: str) -> bool:
        return self._delete("products", product_id, "Failed to delete product")

    def upload_images(self, files: Iterable[ImageUpload]) -> List[str]:
        urls: List[str] = []
        for upload in files:
            safe_name = quote(f"{int(time.time() * 1000)}-{upload.filename}", safe="")
            path = f"products/{safe_name}"
            try:
                urls.append(self._storage.upload(path, upload.data, content_type=upload.content_type, upsert=True))
            except StorageError as e:
                logger.error("Upload error: %s", e.message)
                continue
        return urls


class CategoriesScreen(AdminScreen):
    def __init__(self, data: DataService, alert: Optional[Alert] = None, confirm: Optional[Confirm] = None):
        super().__init__(data, alert, confirm)
        self.categories: List[Category] = []
        self.product_counts: Dict[str, int] = {}

    def load(self) -> None:
        self.state = ScreenState.LOADING
        try:
            self.categories = [Category(**c) for c in self._data.select("categories", order_by="name")]
            # one count query per category
            counts: Dict[str, int] = {}
            for category in self.categories:
                counts[category.id] = self._data.count("products", {"category_id": category.id})
            self.product_counts = counts
        except DataServiceError:
            logger.error("Error fetching categories", exc_info=True)
            self._fail("Failed to load categories")
            return
        self.state = ScreenState.READY

    def edit(self, category_id: str) -> None:
        logger.info("Edit category: %s", category_id)

    def delete(self, category_id: str) -> bool:
        if not self._confirm("Are you sure you want to delete this category?"):
            return False
        return self._delete("categories", category_id, "Failed to delete category")


class DashboardHome(AdminScreen):
    def __init__(self, data: DataService, alert: Optional[Alert] = None, confirm: Optional[Confirm] = None):
        super().__init__(data, alert, confirm)
        self.recent_orders: List[OrderRecord] = []
        self.total_products = 0
        self.total_categories = 0
        self.total_orders = 0
        self.total_revenue = 0.0

    def load(self) -> None:
        self.state = ScreenState.LOADING
        try:
            docs = self._data.select("orders", order_by="created_at", ascending=False, limit=RECENT_ORDERS_LIMIT)
            self.recent_orders = [OrderRecord(**d) for d in docs]
            self.total_products = self._data.count("products")
            self.total_categories = self._data.count("categories")
            totals = self._data.select("orders", fields=["total"])
            self.total_orders = len(totals)
            self.total_revenue = round(sum(float(o.get("total") or 0) for o in totals), 2)
        except DataServiceError:
            logger.error("Error fetching dashboard data", exc_info=True)
            self._fail("Failed to load dashboard")
            return
        self.state = ScreenState.READY


# -------------------- Dashboard shell --------------------

class AdminDashboard:
    """Tab switching over the admin screens for one signed-in session."""

    TABS = ("dashboard", "orders", "products", "categories")

    def __init__(self, session: AdminSession, data: DataService, storage: ObjectStorage,
                 alert: Optional[Alert] = None, confirm: Optional[Confirm] = None):
        self.session = session
        self._data = data
        self._storage = storage
        self._alert = alert or self._record_alert
        self._confirm = confirm
        self.active_tab = "dashboard"
        self.alerts: List[str] = []

    def _record_alert(self, message: str) -> None:
        _log_alert(message)
        self.alerts.append(message)

    def _require_session(self) -> None:
        if not self.session.is_authenticated:
            raise AuthError("Not signed in")

    def _build(self, tab: str) -> AdminScreen:
        if tab == "orders":
            return OrdersScreen(self._data, self._alert, self._confirm)
        if tab == "products":
            return ProductsScreen(self._data, self._storage, self._alert, self._confirm)
        if tab == "categories":
            return CategoriesScreen(self._data, self._alert, self._confirm)
        return DashboardHome(self._data, self._alert, self._confirm)

    def open(self, tab: str, load: bool = True) -> AdminScreen:
        self._require_session()
        self.active_tab = tab if tab in self.TABS else "dashboard"
        screen = self._build(self.active_tab)
        if load:
            screen.load()
        return screen

    def logout(self) -> None:
        self.session.logout()
