# tests/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Keep the app from reading appsettings.json at import; tests load flags explicitly.
os.environ.setdefault("FLAGS_SOURCE", "none")

from flaggate.models import RequestContext
from flaggate.services.snapshot import SnapshotManager

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def manager():
    m = SnapshotManager(fetch_timeout=1.0, clock=lambda: NOW)
    yield m
    m.close()


@pytest.fixture
def ctx():
    def make(subject=None, groups=(), attributes=None, now=NOW):
        return RequestContext(subject_id=subject, groups=frozenset(groups), now=now, attributes=attributes or {})
    return make
