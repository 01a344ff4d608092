# tests/conftest.py
"""
Pytest Fixtures - reusable test components.
"""

import sys
from pathlib import Path

import pytest

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from container_herald.snapshot import SharedSnapshot  # noqa: E402
from tests.fakes import FakeSink, FakeSource  # noqa: E402


@pytest.fixture
def snapshot():
    return SharedSnapshot()


@pytest.fixture
def fake_sink():
    return FakeSink(category_id="900")


@pytest.fixture
def fake_source():
    return FakeSource()
