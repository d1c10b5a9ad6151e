# The repo module builds its engine at import time: point it at sqlite first.
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="catalog-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'catalog.db')}"


@pytest.fixture()
def catalog_client():
    from fastapi.testclient import TestClient
    import repo
    from main import app

    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    return TestClient(app)
