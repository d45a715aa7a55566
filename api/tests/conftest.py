import os
import secrets
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from leadsign.main import app  # noqa: E402
from leadsign import db as db_module  # noqa: E402
from leadsign.db import get_session  # noqa: E402
from leadsign import storage as storage_module  # noqa: E402
from leadsign import notifications as notifications_module  # noqa: E402
from leadsign.models import User  # noqa: E402
from leadsign.routers import documents as documents_router  # noqa: E402
from leadsign.routers import signing as signing_router  # noqa: E402


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    # SQLite skips foreign key checks unless asked, unlike the production database
    @event.listens_for(engine, "connect")
    def _enforce_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_store_file(data: bytes, content_type: str, suggested_name: str, folder: str = "documents"):
        key = f"{folder}/{len(store) + 1}-{suggested_name}"
        store[key] = bytes(data)
        return {"url": f"http://storage.test/{key}", "key": key}

    def fake_remove_file(key: str):
        store.pop(key, None)

    def fake_signed_read_url(key: str, ttl_seconds: int = 3600) -> str:
        return f"http://storage.test/{key}?expires={ttl_seconds}"

    for target in (storage_module, documents_router, signing_router):
        if hasattr(target, "store_file"):
            monkeypatch.setattr(target, "store_file", fake_store_file)
        if hasattr(target, "remove_file"):
            monkeypatch.setattr(target, "remove_file", fake_remove_file)
        if hasattr(target, "signed_read_url"):
            monkeypatch.setattr(target, "signed_read_url", fake_signed_read_url)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, **kwargs):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
                **kwargs,
            }
        )

    monkeypatch.setattr(notifications_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def client(test_engine, setup_db, mock_storage, sent_emails):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_user(engine, name, email, role="user", **extra) -> User:
    with Session(engine) as session:
        user = User(name=name, email=email, role=role, access_token=secrets.token_urlsafe(16), **extra)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user


@pytest.fixture
def users(client, test_engine) -> Dict[str, User]:
    return {
        "admin": make_user(test_engine, "Ada Admin", "admin@example.com", role="admin"),
        "referrer": make_user(test_engine, "Rita Referrer", "rita@example.com", role="referrer", commission_rate=1.5),
        "other_referrer": make_user(test_engine, "Otto Referrer", "otto@example.com", role="referrer"),
        "user": make_user(test_engine, "Uma User", "uma@example.com"),
        "signer": make_user(test_engine, "Sam Signer", "sam@example.com"),
    }


def auth(user: User) -> dict:
    return {"X-Access-Token": user.access_token}
