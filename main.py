import logging
import mimetypes
import secrets
from datetime import date
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

import database
import settings
from admin import AdminDashboard, CategoriesScreen, DashboardHome, ImageUpload, OrdersScreen, ProductsScreen, item_count
from auth import AdminSession, AuthService
from cart import CartStore, DocumentStorage
from catalog import ProductListing, format_spec_label, format_spec_value, get_featured_products, get_product_by_slug
from checkout import CheckoutOrchestrator, compute_totals, free_shipping_remaining
from database import DataService
from errors import AuthError, DataServiceError, StorageError, ValidationFailed
from schemas import (
    AuthUser,
    CartItemAdd,
    CartItemUpdate,
    CheckoutForm,
    OrderFilters,
    Product,
    ProductForm,
    TokenResponse,
    UserCreate,
    UserLogin,
)
from storage import ObjectStorage

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

CART_COOKIE = "cart_session"
CART_STORAGE_COLLECTION = "client_storage"
GENERIC_ERROR = "Something went wrong. Please try again."

app = FastAPI(title="Issaq Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -------------------- Collaborators --------------------

_auth_service = AuthService(database.db)


def get_data() -> DataService:
    return DataService(database.db)


def get_storage() -> ObjectStorage:
    return ObjectStorage(database.db, settings.STORAGE_BUCKET, settings.PUBLIC_BASE_URL)


def get_auth() -> AuthService:
    return _auth_service


def get_cart(request: Request, response: Response, data: DataService = Depends(get_data)) -> CartStore:
    session_id = request.cookies.get(CART_COOKIE)
    if not session_id:
        session_id = secrets.token_urlsafe(16)
        response.set_cookie(CART_COOKIE, session_id, httponly=True, samesite="lax")
    return CartStore(DocumentStorage(data.collection(CART_STORAGE_COLLECTION), session_id))


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    return authorization.split(" ", 1)[1]


def admin_session(token: str = Depends(bearer_token), auth: AuthService = Depends(get_auth)):
    session = AdminSession(auth, token)
    try:
        if not session.is_authenticated:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        yield session
    finally:
        session.close()


def get_dashboard(
    confirm: bool = Query(False),
    session: AdminSession = Depends(admin_session),
    data: DataService = Depends(get_data),
    storage: ObjectStorage = Depends(get_storage),
) -> AdminDashboard:
    return AdminDashboard(session, data, storage, confirm=lambda message: confirm)


def _check_alerts(dashboard: AdminDashboard) -> None:
    if dashboard.alerts:
        raise HTTPException(status_code=502, detail=dashboard.alerts[-1])


def _raise_for_alert(dashboard: AdminDashboard, fallback_status: int, fallback_detail: str):
    _check_alerts(dashboard)
    raise HTTPException(status_code=fallback_status, detail=fallback_detail)


def _open(dashboard: AdminDashboard, tab: str, load: bool = True):
    screen = dashboard.open(tab, load=load)
    _check_alerts(dashboard)
    return screen


# -------------------- Error handling --------------------

@app.exception_handler(DataServiceError)
def data_service_error_handler(request: Request, exc: DataServiceError):
    logger.error("Data service failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=502, content={"detail": GENERIC_ERROR})


@app.exception_handler(AuthError)
def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=401, content={"detail": exc.message})


@app.exception_handler(ValidationFailed)
def validation_failed_handler(request: Request, exc: ValidationFailed):
    return JSONResponse(status_code=422, content={"detail": exc.message, "errors": exc.errors})


# -------------------- Health & Test --------------------

@app.get("/test")
def test_database(data: DataService = Depends(get_data)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": settings.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if not data.available:
        return response
    try:
        response["collections"] = data.collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except DataServiceError as e:
        response["database"] = f"⚠️ Connected but Error: {e.message[:50]}"
    return response


# -------------------- Storefront --------------------

def _cart_view(cart: CartStore) -> dict:
    subtotal = cart.get_subtotal()
    return {
        "items": [
            {"product": i.product, "quantity": i.quantity, "line_total": round(i.line_total, 2)}
            for i in cart.items
        ],
        "item_count": cart.item_count,
        "totals": compute_totals(subtotal),
        "free_shipping_remaining": free_shipping_remaining(subtotal),
    }


@app.get("/")
def home(data: DataService = Depends(get_data)):
    return {"message": "Issaq Store API is running", "featured": get_featured_products(data)}


@app.get("/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort_by: Literal["price", "created_at"] = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    limit: Optional[int] = Query(None, ge=1),
    offset: Optional[int] = Query(None, ge=0),
    data: DataService = Depends(get_data),
):
    listing = ProductListing(data, category=category, search=search, sort_by=sort_by, sort_order=sort_order,
                             limit=limit, offset=offset)
    if not listing.refresh():
        raise HTTPException(status_code=502, detail=GENERIC_ERROR)
    return {
        "products": listing.products,
        "count": len(listing.products),
        "categories": listing.categories,
        "search": search,
        "category": category,
    }


@app.get("/product/{slug}")
def product_detail(slug: str, data: DataService = Depends(get_data)):
    product = get_product_by_slug(data, slug)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    specs = [{"label": format_spec_label(k), "value": format_spec_value(v)} for k, v in product.specs.items()]
    return {**product.model_dump(), "spec_rows": specs}


@app.get("/cart")
def view_cart(cart: CartStore = Depends(get_cart)):
    return _cart_view(cart)


@app.post("/cart/items")
def add_to_cart(payload: CartItemAdd, cart: CartStore = Depends(get_cart), data: DataService = Depends(get_data)):
    doc = data.get_one_by("products", "id", payload.product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    product = Product(**doc)
    if product.stock_quantity == 0:
        raise HTTPException(status_code=409, detail="Out of stock")
    # the line as a whole stays within 1..stock; a full line is left as is
    room = product.stock_quantity - cart.quantity_of(product.id)
    quantity = min(max(1, payload.quantity), room)
    if quantity > 0:
        cart.add_item(product, quantity)
    return _cart_view(cart)


def _require_line(cart: CartStore, product_id: str) -> None:
    if not any(i.product.id == product_id for i in cart.items):
        raise HTTPException(status_code=404, detail="Item not in cart")


@app.patch("/cart/items/{product_id}")
def update_cart_item(product_id: str, payload: CartItemUpdate, cart: CartStore = Depends(get_cart)):
    _require_line(cart, product_id)
    cart.update_quantity(product_id, payload.quantity)
    return _cart_view(cart)


@app.post("/cart/items/{product_id}/increment")
def increment_cart_item(product_id: str, cart: CartStore = Depends(get_cart)):
    _require_line(cart, product_id)
    cart.increment(product_id)
    return _cart_view(cart)


@app.post("/cart/items/{product_id}/decrement")
def decrement_cart_item(product_id: str, cart: CartStore = Depends(get_cart)):
    _require_line(cart, product_id)
    cart.decrement(product_id)
    return _cart_view(cart)


@app.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, cart: CartStore = Depends(get_cart)):
    cart.remove_item(product_id)
    return _cart_view(cart)


@app.get("/checkout")
def checkout_page(cart: CartStore = Depends(get_cart), data: DataService = Depends(get_data)):
    orchestrator = CheckoutOrchestrator(cart, data)
    redirect = orchestrator.enter()
    if redirect:
        return RedirectResponse(redirect, status_code=303)
    return {"items": cart.items, "totals": orchestrator.totals}


@app.post("/checkout", status_code=201)
def place_order(form: CheckoutForm, cart: CartStore = Depends(get_cart), data: DataService = Depends(get_data)):
    orchestrator = CheckoutOrchestrator(cart, data)
    redirect = orchestrator.enter()
    if redirect:
        return RedirectResponse(redirect, status_code=303)
    order = orchestrator.submit(form)
    if order is None:
        raise HTTPException(status_code=502, detail=orchestrator.error)
    return {
        "order_number": orchestrator.order_number,
        "customer_email": order.customer_email,
        "order": order,
    }


@app.get("/storage/{bucket}/{path:path}")
def serve_object(bucket: str, path: str, storage: ObjectStorage = Depends(get_storage)):
    if bucket != storage.bucket_name:
        raise HTTPException(status_code=404, detail="Bucket not found")
    try:
        content = storage.download(path)
    except StorageError:
        raise HTTPException(status_code=404, detail="Object not found")
    media_type, _ = mimetypes.guess_type(path)
    return Response(content=content, media_type=media_type or "application/octet-stream")


# -------------------- Auth --------------------

@app.post("/auth/register", response_model=AuthUser)
def register(payload: UserCreate, auth: AuthService = Depends(get_auth)):
    try:
        return auth.sign_up(payload.name, payload.email, payload.password)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=e.message)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, auth: AuthService = Depends(get_auth)):
    session = auth.sign_in_with_password(payload.email, payload.password)
    return TokenResponse(access_token=session.access_token, expires_at=session.expires_at)


@app.post("/auth/logout")
def logout(session: AdminSession = Depends(admin_session)):
    session.logout()
    return {"ok": True}


@app.get("/me", response_model=AuthUser)
def me(session: AdminSession = Depends(admin_session)):
    return session.user


# -------------------- Admin: dashboard --------------------

@app.get("/admin/dashboard")
def admin_home(dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: DashboardHome = _open(dashboard, "dashboard")
    return {
        "recent_orders": screen.recent_orders,
        "total_products": screen.total_products,
        "total_categories": screen.total_categories,
        "total_orders": screen.total_orders,
        "total_revenue": screen.total_revenue,
    }


# -------------------- Admin: orders --------------------

@app.get("/admin/orders")
def admin_orders(
    status: str = Query(""),
    customer: str = Query(""),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    dashboard: AdminDashboard = Depends(get_dashboard),
):
    screen: OrdersScreen = _open(dashboard, "orders")
    orders = screen.set_filters(OrderFilters(status=status, customer=customer, date_from=date_from, date_to=date_to))
    return {
        "orders": [{**o.model_dump(), "item_count": item_count(o)} for o in orders],
        "total": len(screen.orders),
        "active_filter_count": screen.active_filter_count,
    }


@app.get("/admin/orders/{order_id}/items")
def admin_order_items(order_id: str, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: OrdersScreen = _open(dashboard, "orders")
    if not any(o.id == order_id for o in screen.orders):
        raise HTTPException(status_code=404, detail="Order not found")
    return [{"title": i.label, "quantity": i.effective_quantity} for i in screen.show_items(order_id)]


@app.delete("/admin/orders/{order_id}")
def admin_delete_order(order_id: str, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: OrdersScreen = _open(dashboard, "orders", load=False)
    if not screen.delete(order_id):
        _raise_for_alert(dashboard, 400, "Deletion not confirmed")
    _check_alerts(dashboard)
    return {"ok": True, "remaining": len(screen.orders)}


# -------------------- Admin: products --------------------

def _products_view(screen: ProductsScreen) -> dict:
    return {"products": screen.products, "categories": screen.categories}


@app.get("/admin/products")
def admin_products(dashboard: AdminDashboard = Depends(get_dashboard)):
    return _products_view(_open(dashboard, "products"))


@app.post("/admin/products", status_code=201)
def admin_create_product(form: ProductForm, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: ProductsScreen = _open(dashboard, "products", load=False)
    record = screen.submit(form)
    if record is None:
        _raise_for_alert(dashboard, 502, GENERIC_ERROR)
    _check_alerts(dashboard)
    return {"product": record, **_products_view(screen)}


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: str, form: ProductForm, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: ProductsScreen = _open(dashboard, "products", load=False)
    record = screen.submit(form, editing_id=product_id)
    if record is None:
        _raise_for_alert(dashboard, 404, "Product not found")
    _check_alerts(dashboard)
    return {"product": record, **_products_view(screen)}


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: ProductsScreen = _open(dashboard, "products", load=False)
    if not screen.delete(product_id):
        _raise_for_alert(dashboard, 502, GENERIC_ERROR)
    _check_alerts(dashboard)
    return _products_view(screen)


@app.post("/admin/products/images")
def admin_upload_images(files: List[UploadFile] = File(...), dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: ProductsScreen = _open(dashboard, "products", load=False)
    uploads = [ImageUpload(f.filename or "upload", f.file.read(), f.content_type) for f in files]
    return {"images": screen.upload_images(uploads)}


# -------------------- Admin: categories --------------------

def _categories_view(screen: CategoriesScreen) -> dict:
    return {
        "categories": [
            {**c.model_dump(), "product_count": screen.product_counts.get(c.id, 0)} for c in screen.categories
        ],
        "product_counts": screen.product_counts,
    }


@app.get("/admin/categories")
def admin_categories(dashboard: AdminDashboard = Depends(get_dashboard)):
    return _categories_view(_open(dashboard, "categories"))


@app.post("/admin/categories/{category_id}/edit")
def admin_edit_category(category_id: str, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: CategoriesScreen = _open(dashboard, "categories", load=False)
    screen.edit(category_id)
    return {"ok": True}


@app.delete("/admin/categories/{category_id}")
def admin_delete_category(category_id: str, dashboard: AdminDashboard = Depends(get_dashboard)):
    screen: CategoriesScreen = _open(dashboard, "categories", load=False)
    if not screen.delete(category_id):
        _raise_for_alert(dashboard, 400, "Deletion not confirmed")
    _check_alerts(dashboard)
    return _categories_view(screen)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
