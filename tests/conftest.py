import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

ADMIN = {"username": "admin", "password": "admin-pass"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        admin_username=ADMIN["username"],
        admin_password=ADMIN["password"],
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=1024,
        max_upload_files=2,
        db_retry_delay=0,
        bcrypt_rounds=4,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, username, password="secret-pw"):
    res = client.post("/api/register", json={"username": username, "password": password})
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/login", json=ADMIN)
    assert res.status_code == 200, res.text
    return auth(res.json()["token"])


def open_shop(client, username, **body):
    account = register(client, username)
    headers = auth(account["token"])
    res = client.post("/api/partner/shop/create-default", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return headers, res.json()


@pytest.fixture
def seller(client):
    return open_shop(client, "ravi", name="Ravi Electronics", category="Electronics", mobile="9000000001")


def add_product(client, headers, **overrides):
    body = {"name": "Test", "price": "100", "category": "General"}
    body.update(overrides)
    res = client.post("/api/products", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()
