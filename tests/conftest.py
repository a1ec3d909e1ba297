import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CAPTCHA_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, get_db
from dependencies import create_access_token, get_password_hash
from errors import UpstreamError
from main import app
from models import Account, Event, EventStatus, EventType, MerchandiseItem, Role

PASSWORD = "secret123"
# Computing a bcrypt hash per account makes the suite crawl
PASSWORD_HASH = get_password_hash(PASSWORD)


class RecordingNotifier:
    """Stands in for NotificationDispatcher and keeps every job it is handed."""

    def __init__(self):
        self.jobs = []
        self.delivered = []
        self.fail_delivery = False

    async def start(self):
        pass

    async def stop(self):
        pass

    def emit(self, job):
        self.jobs.append(job)

    async def deliver(self, job):
        if self.fail_delivery:
            raise UpstreamError("Webhook delivery failed: connection refused")
        self.delivered.append(job)

    def emails_to(self, address):
        return [job for job in self.jobs if getattr(job, "to", None) == address]

    def webhooks(self):
        return [job for job in self.jobs if hasattr(job, "url")]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "proofs"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture
def client(db, notifier, monkeypatch):
    def override_get_db():
        yield db

    monkeypatch.setattr(settings, "CAPTCHA_ENABLED", False)
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    app.dependency_overrides[get_db] = override_get_db
    original_notifier = app.state.notifier
    app.state.notifier = notifier
    with TestClient(app) as test_client:
        yield test_client
    app.state.notifier = original_notifier
    app.dependency_overrides.clear()


def auth_headers(account):
    return {"Authorization": f"Bearer {create_access_token(account)}"}


@pytest.fixture
def make_participant(db):
    counter = {"n": 0}

    def make(email=None, participant_type=None, first_name="Asha", last_name="Rao"):
        counter["n"] += 1
        email = email or f"participant{counter['n']}@gmail.com"
        if participant_type is None:
            participant_type = "IIIT" if email.endswith("iiit.ac.in") else "Non-IIIT"
        account = Account(
            role=Role.PARTICIPANT,
            email=email,
            password_hash=PASSWORD_HASH,
            first_name=first_name,
            last_name=last_name,
            phone="9876543210",
            participant_type=participant_type,
            college_name="IIIT Hyderabad" if participant_type == "IIIT" else "Osmania University",
        )
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return make


@pytest.fixture
def make_organizer(db):
    counter = {"n": 0}

    def make(email=None, organizer_name=None, is_active=True, webhook_url=None):
        counter["n"] += 1
        account = Account(
            role=Role.ORGANIZER,
            email=email or f"club{counter['n']}@clubs.iiit.ac.in",
            password_hash=PASSWORD_HASH,
            organizer_name=organizer_name or f"Club {counter['n']}",
            category="Technical",
            contact_email=f"contact{counter['n']}@clubs.iiit.ac.in",
            is_active=is_active,
            webhook_url=webhook_url,
        )
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return make


@pytest.fixture
def make_admin(db):
    def make(email="admin@felicity.iiit.ac.in"):
        account = Account(
            role=Role.ADMIN,
            email=email,
            password_hash=PASSWORD_HASH,
            admin_name="System Admin",
            privileges="full",
        )
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return make


@pytest.fixture
def participant(make_participant):
    return make_participant()


@pytest.fixture
def organizer(make_organizer):
    return make_organizer()


@pytest.fixture
def admin(make_admin):
    return make_admin()


@pytest.fixture
def make_event(db):
    """Insert an event directly, bypassing the schedule checks on create."""

    def make(organizer, status=EventStatus.PUBLISHED, event_type=EventType.NORMAL, items=None, **fields):
        now = datetime.utcnow()
        values = dict(
            name="Hackathon",
            description="24 hour coding contest",
            category="Technical",
            eligibility="all",
            tags=["coding", "tech"],
            venue="Himalaya 105",
            registration_fee=0,
            start_at=now + timedelta(days=2),
            end_at=now + timedelta(days=2, hours=6),
            registration_deadline=now + timedelta(days=1),
            custom_form_fields=[],
        )
        values.update(fields)
        event = Event(organizer_id=organizer.id, status=status, event_type=event_type, **values)
        if items:
            event.items = [
                MerchandiseItem(position=i, **item) for i, item in enumerate(items)
            ]
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return make


@pytest.fixture
def merch_event(make_event, organizer):
    return make_event(
        organizer,
        name="Felicity T-Shirt Sale",
        event_type=EventType.MERCHANDISE,
        category="Merchandise",
        items=[{"name": "T-Shirt", "variant": "M", "price": 300, "stock": 5, "purchase_limit": 3}],
    )


def iso(value):
    return value.isoformat()
