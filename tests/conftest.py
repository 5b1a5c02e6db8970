import os

# In-memory database for the application engine created at import time
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from typing import Callable, Dict, Generator, List, Optional, Tuple
from faker import Faker

from app.main import app
from app.database import get_db, Base, enable_sqlite_foreign_keys
from app.models.models import Profile
from app.services.auth_service import hash_password_with_salt
from app.client.api_client import SyncApiClient
from app.client.crypto import encrypt_data, generate_salt, hash_password_for_transport
from app.client.store import LocalStore
from app.utils.time_utils import utcnow

# Setup test database
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

fake = Faker()


@pytest.fixture
def db() -> Generator:
    """Fresh schema for every test"""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db) -> TestClient:
    """Get test client with database dependency override"""
    def override_get_db_for_test():
        try:
            yield db
        finally:
            pass  # Let the db fixture handle cleanup

    app.dependency_overrides[get_db] = override_get_db_for_test
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_profile(db) -> Callable[..., Tuple[Profile, str]]:
    """
    Factory for stored profiles.

    Returns (profile, transport_hash) so tests can authenticate as the owner.
    ``legacy=True`` stores the transport hash itself, as older rows did.
    """
    def _make(password: str = "correct horse battery", legacy: bool = False, **overrides) -> Tuple[Profile, str]:
        transport_hash = hash_password_for_transport(password)
        if legacy:
            record, password_salt = transport_hash, None
        else:
            record, password_salt = hash_password_with_salt(transport_hash)

        values = dict(
            id=fake.uuid4(),
            name=fake.name(),
            password_hash=record,
            password_salt=password_salt,
            encrypted_api_key="ZW5jcnlwdGVkLWtleXM=",
            salt=generate_salt(),
            languages=["python"],
            frameworks=["fastapi"],
            tools=[],
            topics=["sync"],
            depth="standard",
            content_updated_at=utcnow(),
        )
        values.update(overrides)
        profile = Profile(**values)
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile, transport_hash

    return _make


@pytest.fixture
def encrypted_item() -> Callable[..., Dict[str, str]]:
    """Opaque ciphertext in the shape the client uploads"""
    def _item(item_id: Optional[str] = None, body: Optional[Dict] = None) -> Dict[str, str]:
        item_id = item_id or fake.uuid4()
        payload = body or {"id": item_id, "content": fake.paragraph()}
        return {"id": item_id, "encrypted_data": encrypt_data(payload, "pw", "AAAAAAAAAAAAAAAAAAAAAA==")}
    return _item


class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to"""

    def __init__(self, interval: float, function: Callable[[], object]):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self):
        return self.function()


@pytest.fixture
def timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers) -> Callable[..., FakeTimer]:
    def _factory(interval, function):
        timer = FakeTimer(interval, function)
        timers.append(timer)
        return timer
    return _factory


@pytest.fixture
def api(client) -> SyncApiClient:
    """Sync client whose HTTP transport is the in-process test app"""
    return SyncApiClient(base_url="", http=client)


@pytest.fixture
def local_store() -> LocalStore:
    return LocalStore()
