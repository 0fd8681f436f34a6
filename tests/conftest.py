import os

import pytest

from roadwatch.observability.internal_metrics import reset as reset_metrics


def pytest_configure(config):
    os.environ.setdefault("ROADWATCH_JWT_SECRET", "test-jwt-secret")
    os.environ.setdefault("ROADWATCH_JWT_ISSUER", "roadwatch")
    os.environ.setdefault("ROADWATCH_JWT_AUDIENCE", "roadwatch-api")
    os.environ.setdefault("ROADWATCH_STORE", "memory")
    os.environ.setdefault("ROADWATCH_LOG_FORMAT", "text")
    os.environ.setdefault("ROADWATCH_RATE_LIMIT_CITIZEN", "5000")
    os.environ.setdefault("ROADWATCH_RATE_LIMIT_STAFF", "5000")
    os.environ.setdefault("ROADWATCH_RATE_LIMIT_ADMIN", "5000")


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()
