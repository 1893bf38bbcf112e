"""
Shared fixtures: a temporary SQLite store, a repository record in it and a
vault with a fixed master secret.
"""

import os
import tempfile

import pytest

from ci_common.models import Repository
from ci_persistence.secret_vault import FernetSecretVault
from ci_persistence.sqlite_repository import SQLiteBuildRepository


@pytest.fixture
async def store():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteBuildRepository(path)
    await repo.initialize()

    yield repo

    # Cleanup
    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
async def repository(store):
    """A public repository acme/widgets."""
    repository = Repository(id="repo-1", owner_name="acme", name="widgets")
    await store.create_repository(repository)
    return repository


@pytest.fixture
def vault():
    return FernetSecretVault("test-master-secret")
