import os

# Worker modules build their broker at import time
os.environ.setdefault("DRAMATIQ_BROKER", "stub")

from unittest.mock import MagicMock

import pytest

from leasecycle.core.store import InMemoryConditionalStore
from leasecycle.test.factories import NOW


@pytest.fixture
def store():
    return InMemoryConditionalStore()


@pytest.fixture
def clock():
    """Fixed clock; tests move time by setting ``clock.return_value``."""
    return MagicMock(return_value=NOW)
