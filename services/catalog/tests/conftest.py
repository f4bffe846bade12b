import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="catalog-tests-")
os.environ["CATALOG_DATABASE_URL"] = f"sqlite:///{_DB_DIR}/catalog.db"

from fastapi.testclient import TestClient  # noqa: E402

from services.catalog import repo  # noqa: E402
from services.catalog.main import app  # noqa: E402


@pytest.fixture
def client():
    repo.Base.metadata.drop_all(repo.engine)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def product(client):
    r = client.put(
        "/products/P1",
        json={"name": "Coffee mug", "gross_price": "12.50", "image_url": "https://img.local/p1.png", "stock": 10},
    )
    assert r.status_code == 200
    return r.json()
