"""
Shared pytest fixtures.

Each test gets a fresh in-memory SQLite database built from the ORM metadata.
Environment defaults are set before any backend module is imported because
the engine and settings are created at import time.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.config import Settings
from backend.database import Base
from backend.app.models import Family, User, FamilyMember, FamilyRole
from backend.app.bank_integration.encryption import TokenEncryption


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        secret_key="test-secret-key",
        gocardless_secret_id="test-secret-id",
        gocardless_secret_key="test-secret-key",
        plaid_client_id="test-client-id",
        plaid_secret="test-plaid-secret",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def encryption():
    return TokenEncryption("test-secret-key")


@pytest.fixture
def user(db):
    user = User(email="kari@example.com", full_name="Kari Nordmann")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def family(db, user):
    family = Family(name="Nordmann")
    db.add(family)
    db.flush()
    db.add(FamilyMember(family_id=family.id, user_id=user.id, role=FamilyRole.OWNER))
    db.commit()
    return family


@pytest.fixture
def other_family(db):
    family = Family(name="Hansen")
    db.add(family)
    db.commit()
    return family
