import os
import pytest
from contextlib import contextmanager
from sqlalchemy import create_engine, event, StaticPool
from sqlalchemy.orm import sessionmaker

os.environ["COACHVAULT_SKIP_MIGRATIONS"] = "1"
os.environ["TESTING"] = "1"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from coachvault.database import Base, configure_sqlite, get_db
from coachvault.main import app
from coachvault.models import User


@contextmanager
def count_commits(db_session):
    """Context manager that counts DB commits."""
    counter = {"count": 0}

    def _after_commit(session):
        counter["count"] += 1

    event.listen(db_session, "after_commit", _after_commit)
    try:
        yield counter
    finally:
        event.remove(db_session, "after_commit", _after_commit)


def seed_user(db, user_id="user-1", email=None, **fields):
    user = User(id=user_id, email=email or f"{user_id}@example.com", **fields)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def db_session():
    engine = configure_sqlite(create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    ), wal=False)
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions over an on-disk WAL database, for code that opens its own sessions."""
    engine = configure_sqlite(create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    ))
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def user(db_session):
    return seed_user(db_session)


@pytest.fixture
def client(db_session):
    from fastapi.testclient import TestClient

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
