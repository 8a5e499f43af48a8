"""
Pytest configuration and fixtures for the lead import tests.

Every test gets a fresh in-memory SQLite database with the ORM tables, an
in-memory file store and an orchestrator that runs work units inline, so the
whole pipeline can be exercised without PostgreSQL, S3 or the task queue.
"""
import io
import os

# The app must not try to bootstrap a real database when imported.
os.environ["SKIP_DB_INIT"] = "1"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.schemas.shared import ColumnMapping
from app.db import models  # noqa: F401
from app.db.models import ImportJob, Profile
from app.db.session import Base, get_db
from app.domain.imports.dispatch import InlineDispatcher
from app.domain.imports.jobs import create_import_job
from app.domain.imports.orchestrator import ImportOrchestrator
from app.integrations.notifications import Notifier
from app.integrations.storage import StorageDownloadError


class InMemoryFileSource:
    """Dict-backed stand-in for object storage."""

    def __init__(self):
        self.files = {}

    def put(self, path: str, content) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.files[path] = content

    def open(self, path: str):
        if path not in self.files:
            raise StorageDownloadError(f"File not found: {path}")
        return io.BytesIO(self.files[path])

    def save(self, path: str, stream) -> int:
        data = stream.read()
        self.files[path] = data
        return len(data)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.completed = []
        self.failed = []

    def import_completed(self, user_id, job_id, file_name, imported_rows):
        self.completed.append((user_id, job_id, file_name, imported_rows))

    def import_failed(self, user_id, job_id, file_name, error_message):
        self.failed.append((user_id, job_id, file_name, error_message))


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
def file_source():
    return InMemoryFileSource()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(session_factory, file_source, notifier):
    return ImportOrchestrator(
        session_factory,
        file_source,
        InlineDispatcher(),
        notifier,
        parse_batch_size=2,
        commit_batch_size=2,
    )


@pytest.fixture
def profiles(db):
    users = [
        Profile(id="user-a", display_name="Alice Martin", email="alice@agence.fr"),
        Profile(id="user-b", display_name="Bruno Petit", email="bruno@agence.fr"),
        Profile(id="user-c", display_name="Chloé Durand", email="chloe@agence.fr"),
    ]
    db.add_all(users)
    db.commit()
    return users


def mapping_for(headers, targets):
    """Build a manual mapping: ``targets`` maps header name to lead field."""
    return [
        ColumnMapping(
            source_column=header,
            source_index=index,
            target_field=targets.get(header),
            confidence=1.0 if targets.get(header) else 0.0,
            is_manual=bool(targets.get(header)),
        ).model_dump(mode="json", by_alias=True)
        for index, header in enumerate(headers)
    ]


@pytest.fixture
def make_job(db, file_source):
    """Create a pending job holding ``content`` with an optional stored mapping."""

    def _make_job(
        content,
        *,
        file_name="leads.csv",
        file_type="csv",
        targets=None,
        headers=None,
        created_by="user-a",
        **options,
    ) -> ImportJob:
        path = f"imports/test/{len(file_source.files)}_{file_name}"
        file_source.put(path, content)
        job = create_import_job(
            db,
            file_name=file_name,
            file_type=file_type,
            storage_path=path,
            created_by=created_by,
        )
        if targets is not None:
            job.column_mapping = mapping_for(headers, targets)
        for name, value in options.items():
            setattr(job, name, value)
        db.commit()
        return job

    return _make_job


@pytest.fixture
def client(session_factory, orchestrator):
    from app.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.orchestrator = orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.orchestrator = None
