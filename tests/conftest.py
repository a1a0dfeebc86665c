import io
from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from gridfs.errors import NoFile
from pymongo.errors import PyMongoError

import main
from auth import AuthService
from database import DataService
from errors import DataServiceError
from schemas import Product
from storage import ObjectStorage


class _StoredFile:
    def __init__(self, name):
        self._id = name


class FakeBucket:
    """In-memory stand-in for a GridFS bucket."""

    def __init__(self):
        self.files = {}
        self.fail_names = set()

    def find(self, filter):
        name = filter["filename"]
        return [_StoredFile(name)] if name in self.files else []

    def delete(self, file_id):
        self.files.pop(file_id, None)

    def upload_from_stream(self, filename, source, metadata=None):
        if any(bad in filename for bad in self.fail_names):
            raise PyMongoError("quota exceeded")
        self.files[filename] = bytes(source)
        return filename

    def open_download_stream_by_name(self, filename):
        if filename not in self.files:
            raise NoFile(f"no file named {filename}")
        return io.BytesIO(self.files[filename])


class FailingData(DataService):
    """Data service whose writes fail until ``fail_writes`` is switched off."""

    def __init__(self, database):
        super().__init__(database)
        self.fail_writes = True

    def insert(self, collection, data):
        if self.fail_writes:
            raise DataServiceError("network unreachable")
        return super().insert(collection, data)

    def delete(self, collection, record_id):
        if self.fail_writes:
            raise DataServiceError("permission denied")
        return super().delete(collection, record_id)


def make_product(**overrides) -> Product:
    fields = {
        "id": "p1",
        "title": "Phone Case",
        "slug": "phone-case",
        "price": 30.0,
        "images": ["http://img/case.png"],
        "stock_quantity": 5,
    }
    fields.update(overrides)
    return Product(**fields)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().db


@pytest.fixture
def data(mongo_db):
    return DataService(mongo_db)


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def storage(mongo_db, bucket):
    return ObjectStorage(mongo_db, "issaqimages", "http://testserver", bucket=bucket)


@pytest.fixture
def auth(mongo_db):
    return AuthService(mongo_db)


@pytest.fixture
def catalog(data):
    phones = data.insert("categories", {"name": "Phones", "slug": "phones", "description": None})
    accessories = data.insert("categories", {"name": "Accessories", "slug": "accessories", "description": "Extras"})
    products = {}
    rows = [
        ("Galaxy S", "galaxy-s", phones["id"], 699.0, 10, True, datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ("Pixel Pro", "pixel-pro", phones["id"], 899.0, 3, True, datetime(2024, 2, 1, tzinfo=timezone.utc)),
        ("USB-C Cable", "usb-c-cable", accessories["id"], 12.5, 50, False, datetime(2024, 3, 1, tzinfo=timezone.utc)),
        ("Phone Case (Clear)", "phone-case-clear", accessories["id"], 30.0, 0, False,
         datetime(2024, 4, 1, tzinfo=timezone.utc)),
    ]
    for title, slug, category_id, price, stock, featured, created in rows:
        products[slug] = data.insert("products", {
            "title": title,
            "slug": slug,
            "category_id": category_id,
            "description": f"{title} description",
            "price": price,
            "currency": "USD",
            "images": [f"http://img/{slug}-1.png", f"http://img/{slug}-2.png"],
            "specs": {"color_options": ["black", "white"], "weight_grams": 180},
            "stock_quantity": stock,
            "featured": featured,
            "created_at": created,
        })
    return {"phones": phones, "accessories": accessories, "products": products}


@pytest.fixture
def client(data, storage, auth):
    main.app.dependency_overrides[main.get_data] = lambda: data
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    main.app.dependency_overrides[main.get_auth] = lambda: auth
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(auth):
    auth.sign_up("Admin", "admin@example.com", "s3cret-pass")
    session = auth.sign_in_with_password("admin@example.com", "s3cret-pass")
    return {"Authorization": f"Bearer {session.access_token}"}
