from datetime import UTC, datetime

import pytest
from fakes import InMemoryNotificationRepository, RecordingSender

from notifications.application.dispatcher import (
    ChannelSenderRegistry,
    NotificationDispatcher,
)
from notifications.domain.entities import NotificationChannel

# Midday UTC keeps every notification inside the default delivery window
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repository():
    return InMemoryNotificationRepository()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def sender_registry(sender):
    return ChannelSenderRegistry({channel: sender for channel in NotificationChannel})


@pytest.fixture
def dispatcher(repository, sender_registry):
    return NotificationDispatcher(
        notification_repository=repository, sender_registry=sender_registry
    )
