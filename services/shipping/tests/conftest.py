import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="shipping-tests-")
os.environ["SHIPPING_DATABASE_URL"] = f"sqlite:///{_DB_DIR}/shipping.db"

from fastapi.testclient import TestClient  # noqa: E402

from services.shipping import repo  # noqa: E402
from services.shipping.main import app  # noqa: E402


@pytest.fixture
def client():
    repo.Base.metadata.drop_all(repo.engine)
    with TestClient(app) as c:
        yield c
