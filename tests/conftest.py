"""Shared fixtures: in-memory SQLite, local document storage, signed bearer tokens."""

import os
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["PHI_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["AUTH_JWT_SECRET"] = "test-secret-with-enough-bytes-for-hs256-signing"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["RESEND_API_KEY"] = ""

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from clinic_intake.config import settings  # noqa: E402
from clinic_intake.jobs import followup, tasks  # noqa: E402
from clinic_intake.main import app  # noqa: E402
from clinic_intake.models import database  # noqa: E402
from clinic_intake.models.intake import RoleAssignment  # noqa: E402
from clinic_intake.services.storage import LocalDocumentStore  # noqa: E402

SIGNATURE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def make_answers(**overrides):
    answers = {
        "schema_version": 1,
        "patient_name": "Jane Doe",
        "date_of_birth": "1990-01-15",
        "address": "12 Main St",
        "city": "Miami",
        "zip_code": "33101",
        "accident_date": "2026-09-01",
        "insurance_provider": "Acme Mutual",
        "policy_number": "P-1001",
        "new_patient_consent": True,
        "insurance_assignment_consent": True,
        "emergency_medical_consent": True,
    }
    answers.update(overrides)
    return answers


@pytest.fixture(autouse=True)
def schema():
    database.Base.metadata.create_all(bind=database.engine)
    yield
    database.Base.metadata.drop_all(bind=database.engine)


@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch):
    root = tmp_path / "documents"
    monkeypatch.setattr(settings, "STORAGE_LOCAL_ROOT", str(root))
    return root


@pytest.fixture
def store(storage_root):
    return LocalDocumentStore(storage_root)


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def inline_dispatch(monkeypatch):
    """Run dispatched follow-up jobs once, in-process, instead of sending them to a broker."""
    dispatched = []

    def _dispatch(job_id):
        dispatched.append(job_id)
        followup.run_job(job_id)

    monkeypatch.setattr(tasks, "dispatch_followup", _dispatch)
    return dispatched


@pytest.fixture
def client(inline_dispatch):
    return TestClient(app)


@pytest.fixture
def token_for():
    def _token(principal_id, expires_in=3600):
        claims = {
            "sub": principal_id,
            "aud": settings.AUTH_JWT_AUDIENCE,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm="HS256")

    return _token


@pytest.fixture
def auth_headers(token_for):
    def _headers(principal_id):
        return {"Authorization": f"Bearer {token_for(principal_id)}"}

    return _headers


@pytest.fixture
def grant(db):
    """Insert a role assignment directly, bypassing the admin-only service."""

    def _grant(principal_id, role):
        db.add(RoleAssignment(principal_id=principal_id, role=role, granted_by="fixture"))
        db.commit()

    return _grant


@pytest.fixture
def answers():
    return make_answers


@pytest.fixture
def signature():
    return SIGNATURE
