"""Root conftest for test suite.

Resets process-wide state between tests: the cached settings object and
the job store circuit breaker are module-level singletons.
"""

import pytest

from enrichment_queue.config import get_settings
from enrichment_queue.core.resilience import reset_circuit


@pytest.fixture(autouse=True)
def _reset_global_state():
    get_settings.cache_clear()
    reset_circuit()
    yield
    get_settings.cache_clear()
    reset_circuit()
