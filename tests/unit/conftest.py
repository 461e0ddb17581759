import pytest


@pytest.fixture(autouse=True)
def patch_datastore():
    # Datastore unit tests exercise the real PostgreSQL functions against fakes.
    yield
