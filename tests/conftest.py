import pytest
from tests.factories import FakeTransport


@pytest.fixture
def transport():
    return FakeTransport()
