import logging
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from tests._helpers import *  # noqa: E402,F401,F403
from tests._helpers import ENV_VARS  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Keep host environment variables and logging config out of every test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
