import os

import pytest

os.environ.setdefault("NO_COLOR", "1")

import main  # noqa: E402


@pytest.fixture(autouse=True)
def clear_definition_cache():
    """Every test starts with an empty definition cache."""
    main._cache.clear()
    main._url_locks.clear()
    yield
    main._cache.clear()
    main._url_locks.clear()
