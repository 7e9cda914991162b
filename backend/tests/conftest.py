import os
import sys

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("CLEANUP_ENABLED", "false")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tessera import models  # noqa: E402,F401
from tessera.api import deps  # noqa: E402
from tessera.api.auth import router as auth_router  # noqa: E402
from tessera.database import Base  # noqa: E402
from tessera.models.user import User  # noqa: E402
from tessera.services.devices import describe  # noqa: E402
from tessera.services.identity import get_password_hash  # noqa: E402

PASSWORD = "TestPass123!"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def device():
    return describe(CHROME_UA, "10.0.0.1")


@pytest.fixture
def make_user(db):
    def _make_user(username: str = "alpha", roles: list[str] | None = None) -> User:
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=get_password_hash(PASSWORD),
        )
        user.roles = roles or ["customer"]
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def client(session_factory):
    app = FastAPI()
    app.include_router(auth_router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    return TestClient(app)
