import os

import pytest

# app.main refuses to import in production mode without credentials.
os.environ.setdefault("APP_ENV", "test")

from tests.support import FakeBackend  # noqa: E402


@pytest.fixture
def backend():
    return FakeBackend()
