# backend/tests/conftest.py
from __future__ import annotations

import os
import tempfile

# settings are read once at import time, so the environment goes first
_TMP = tempfile.mkdtemp(prefix="leasehold-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["APP_ENV"] = "test"
os.environ["AUTH_MODE"] = "dev"
os.environ["NOTIFICATION_DISPATCH_MODE"] = "deferred"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test"
os.environ.pop("NOTIFICATION_GATEWAY_URL", None)

import pytest  # noqa: E402

from leasehold import models  # noqa: E402,F401
from leasehold.db import Base, engine  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
