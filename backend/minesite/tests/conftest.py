import os
os.environ["TESTING"] = "1"
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from minesite.main import app
from minesite.database import Base, configure_sqlite, get_db
from minesite import models

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
configure_sqlite(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def _create_site(name: str | None = None) -> models.Site:
    session = TestingSessionLocal()
    try:
        site = models.Site(name=name or f"site-{uuid.uuid4().hex[:8]}")
        session.add(site)
        session.commit()
        session.refresh(site)
        session.expunge(site)
        return site
    finally:
        session.close()


@pytest.fixture
def site():
    """A committed, uniquely named site so tests never share shift or month keys."""

    return _create_site()


@pytest.fixture
def make_site():
    return _create_site


@pytest.fixture
def headers():
    def build(email: str | None = None, role: str = "validator", sites: str = "*"):
        return {
            "X-Actor": email or f"{uuid.uuid4().hex[:8]}@mine.example",
            "X-Actor-Role": role,
            "X-Actor-Sites": sites,
        }

    return build
