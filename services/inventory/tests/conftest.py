import os
import tempfile

import pytest

# repo builds its engine at import time
_DB_DIR = tempfile.mkdtemp(prefix="inventory-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'inventory.db')}"

from fastapi.testclient import TestClient  # noqa: E402

import repo  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture
def client():
    repo.Base.metadata.drop_all(repo.engine)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def seeded(client):
    r = client.put(
        "/products/p1",
        json={"name": "Oud Candle", "price": "50.00", "discount_percent": 10, "stock": 5},
    )
    assert r.status_code == 200
    return r.json()
