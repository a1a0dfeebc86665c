import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from database import DataService, any_of, ilike
from errors import DataServiceError
from schemas import Category, Product, ProductQuery, ProductWithCategory

logger = logging.getLogger(__name__)

FEATURED_LIMIT = 6


# -------------------- Queries --------------------

def get_categories(data: DataService) -> List[Category]:
    return [Category(**c) for c in data.select("categories", order_by="name")]


def get_products(data: DataService, query: Optional[ProductQuery] = None) -> List[Product]:
    query = query or ProductQuery()
    filters: Dict[str, Any] = {}
    if query.category_id:
        filters["category_id"] = query.category_id
    if query.featured is not None:
        filters["featured"] = query.featured
    docs = data.select(
        "products",
        filters=filters,
        order_by=query.sort_by,
        ascending=query.sort_order == "asc",
        limit=query.limit,
        offset=query.offset,
    )
    return [Product(**d) for d in docs]


def get_featured_products(data: DataService, limit: int = FEATURED_LIMIT) -> List[Product]:
    return get_products(data, ProductQuery(featured=True, limit=limit))


def get_product_by_slug(data: DataService, slug: str) -> Optional[ProductWithCategory]:
    doc = data.get_one_by("products", "slug", slug)
    if not doc:
        return None
    product = ProductWithCategory(**doc)
    if product.category_id and ObjectId.is_valid(product.category_id):
        category = data.get_one_by("categories", "id", product.category_id)
        if category:
            product.category = Category(**category)
        else:
            logger.warning("Product %s points at missing category %s", product.id, product.category_id)
    return product


def search_products(data: DataService, term: str) -> List[Product]:
    docs = data.select(
        "products",
        filters=any_of({"title": ilike(term)}, {"description": ilike(term)}),
        order_by="created_at",
        ascending=False,
    )
    return [Product(**d) for d in docs]


def format_spec_label(key: str) -> str:
    return key.replace("_", " ")


def format_spec_value(value) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


# -------------------- Listing controller --------------------

class ProductListing:
    """Product listing page state.

    The query is re-run explicitly whenever one of the declared inputs
    changes. Each run is stamped with a generation; a result that comes back
    after a newer run has started is dropped.
    """

    INPUTS = ("category", "search", "sort_by", "sort_order", "limit", "offset")

    def __init__(self, data: DataService, category: Optional[str] = None, search: Optional[str] = None,
                 sort_by: str = "created_at", sort_order: str = "desc", limit: Optional[int] = None,
                 offset: Optional[int] = None):
        self._data = data
        self.category = category
        self.search = search
        self.sort_by = sort_by
        self.sort_order = sort_order
        self.limit = limit
        self.offset = offset
        self.products: List[Product] = []
        self.categories: List[Category] = []
        self.loading = False
        self._generation = 0

    @property
    def inputs(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.INPUTS}

    def set_inputs(self, **changes) -> bool:
        unknown = set(changes) - set(self.INPUTS)
        if unknown:
            raise TypeError(f"Unknown listing inputs: {', '.join(sorted(unknown))}")
        changed = {k: v for k, v in changes.items() if getattr(self, k) != v}
        if not changed:
            return False
        for k, v in changed.items():
            setattr(self, k, v)
        self.refresh()
        return True

    def _fetch(self) -> Tuple[List[Category], List[Product]]:
        categories = get_categories(self._data)
        if self.search:
            return categories, search_products(self._data, self.search)
        category_id = None
        if self.category:
            category_id = next((c.id for c in categories if c.slug == self.category), None)
        query = ProductQuery(
            category_id=category_id,
            sort_by=self.sort_by,
            sort_order=self.sort_order,
            limit=self.limit,
            offset=self.offset,
        )
        return categories, get_products(self._data, query)

    def refresh(self) -> bool:
        self._generation += 1
        generation = self._generation
        self.loading = True
        try:
            categories, products = self._fetch()
        except DataServiceError:
            logger.error("Failed to load products for %s", self.inputs, exc_info=True)
            if generation == self._generation:
                self.loading = False
            return False
        if generation != self._generation:
            logger.debug("Dropping stale product listing result (generation %d)", generation)
            return False
        self.categories = categories
        self.products = products
        self.loading = False
        return True
