import pytest

from image_gateway.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.log_json = False

from tests.helpers import FakeClock, RecordingSleep  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)
