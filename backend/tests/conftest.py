import pytest

from investing.config import Settings
from investing.context import assemble_context

from fakes import FakeQuoteSource, MemoryStore, RecordingNotifier, RecordingSleep


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        scheduler_autostart=False,
        cron_secret="test-secret",
        error_webhook_url="",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def source():
    return FakeQuoteSource()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def context(settings, store, source, notifier, sleep):
    return assemble_context(settings, store, source, notifier=notifier, sleep=sleep)


@pytest.fixture
def engine(context):
    return context.engine
