import pytest

from tests.helpers import FakeStateSource


@pytest.fixture
def source() -> FakeStateSource:
    return FakeStateSource()
