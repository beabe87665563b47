import os
from collections.abc import Generator
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from campus.core.audit import AuditRecorder
from campus.core.mailer import get_mailer
from campus.core.metrics import reset_metrics
from campus.core.security import hash_password
from campus.db import models  # noqa: F401
from campus.db.base import Base
from campus.db.models.user import ROLE_SUPERADMIN, User
from campus.db.session import get_db, get_session_factory

os.environ.setdefault("SECRET_KEY", "test-secret-key")

TEST_PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@dataclass
class RecordingMailer:
    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail: bool = False

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((to, subject, html_body))
        return True


def make_user(
    db: Session,
    *,
    username: str,
    email: str | None = None,
    role: str = "user",
    status: str = "active",
    is_verified: bool = False,
    can_show_contact: bool = False,
    phone: str | None = "+10000000000",
    personal_email: str | None = None,
) -> User:
    email = email or f"{username}@example.edu"
    user = User(
        name=username.title(),
        username=username,
        email=email,
        school_email=f"{username}@school.example.edu",
        personal_email=personal_email,
        hashed_password=_PASSWORD_HASH,
        phone=phone,
        university_name="Example University",
        role=role,
        status=status,
        is_verified=is_verified,
        can_show_contact=can_show_contact,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_superadmin(db: Session, username: str = "root") -> User:
    return make_user(db, username=username, role=ROLE_SUPERADMIN, is_verified=True, can_show_contact=True)


@pytest.fixture(autouse=True)
def _clean_metrics() -> Generator[None, None, None]:
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def client(session_factory, mailer, tmp_path, monkeypatch) -> Generator[TestClient, None, None]:
    from campus.main import app
    from campus.services import files

    def _get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    monkeypatch.setattr(files, "UPLOAD_DIR", str(upload_dir))
    uploads = next(route.app for route in app.routes if getattr(route, "name", None) == "uploads")
    monkeypatch.setattr(uploads, "directory", str(upload_dir))
    monkeypatch.setattr(uploads, "all_directories", [str(upload_dir)])
    monkeypatch.setattr(uploads, "config_checked", False)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_mailer] = lambda: mailer
    previous_recorder = getattr(app.state, "audit_recorder", None)
    app.state.audit_recorder = AuditRecorder(session_factory)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.audit_recorder = previous_recorder
