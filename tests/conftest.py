import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from devicemon.config import Settings
from devicemon.database import init_db
from devicemon.models import Device, DeviceStatus, System


class RecordingQueue:
    """Stands in for AlertQueue: keeps submitted contexts instead of evaluating them."""

    def __init__(self):
        self.contexts = []

    def submit(self, context):
        self.contexts.append(context)
        return True


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        alert_cooldown_minutes=15,
        alert_email_enabled=False,
        alert_webhook_timeout_seconds=2.0,
        syslog_device_cache_ttl_seconds=300,
    )


@pytest.fixture()
def alert_queue():
    return RecordingQueue()


@pytest.fixture()
def make_system(db):
    def _make(name="Core"):
        system = System(name=name)
        db.add(system)
        db.commit()
        db.refresh(system)
        return system

    return _make


@pytest.fixture()
def make_device(db):
    def _make(name="sw1", ip_address="10.0.0.5", status=DeviceStatus.UNKNOWN, system=None, **kwargs):
        device = Device(
            name=name,
            ip_address=ip_address,
            status=status,
            system_id=system.id if system is not None else None,
            **kwargs,
        )
        db.add(device)
        db.commit()
        db.refresh(device)
        return device

    return _make
