"""Shared fixtures: a throwaway SQLite vault per test."""

import os
import tempfile

from cryptography.fernet import Fernet

# Settings are read at import time, so point them at SQLite before healthvault loads.
os.environ["DATABASE_URL"] = f"sqlite:///{tempfile.mkdtemp(prefix='healthvault-')}/app.db"
os.environ.setdefault("PHI_ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import healthvault.models.records  # noqa: E402,F401  registers the tables
from healthvault.etl.migration import MigrationOrchestrator  # noqa: E402
from healthvault.etl.registry import SessionRegistry  # noqa: E402
from healthvault.etl.store import CanonicalStore  # noqa: E402
from healthvault.models.database import Base, build_engine  # noqa: E402
from healthvault.services.encryption import EncryptionService  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'vault.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def encryption():
    return EncryptionService(Fernet.generate_key())


@pytest.fixture
def store(session_factory):
    return CanonicalStore(session_factory)


@pytest.fixture
def registry(session_factory, encryption):
    return SessionRegistry(session_factory, encryption)


@pytest.fixture
def orchestrator(store, registry):
    return MigrationOrchestrator(store, registry, type_workers=4, record_workers=4, write_attempts=3)


@pytest.fixture
def vault_session(registry):
    return registry.create_session(
        provider_id="epic",
        patient_external_id="pat-1",
        fhir_server="https://fhir.example.org/R4",
        access_token="secret-token",
        scope="patient/*.read",
    )
