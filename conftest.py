"""Test configuration: package imports and entity factories."""

import os
import sys

import pytest

# Add the repository root (the directory containing this file) to ``sys.path``
# if it is not already present, as when running ``python -m pytest``.
ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from pickup_sync.core.models import ChatMessage, Game, Notification, Series  # noqa: E402
from pickup_sync.data.store import EntityStore  # noqa: E402


def game(game_id="g1", **fields):
    data = {
        "id": game_id,
        "version": 1,
        "date": "2030-06-01",
        "time": "18:00",
        "maxPlayers": 10,
    }
    data.update(fields)
    return Game.model_validate(data)


def series(series_id="s1", **fields):
    data = {"id": series_id, "version": 1, "recurrence": {"type": "WEEKLY", "dayOfWeek": 2}}
    data.update(fields)
    return Series.model_validate(data)


def message(message_id="m1", room_id="r1", **fields):
    data = {
        "id": message_id,
        "version": 1,
        "roomId": room_id,
        "senderId": "u2",
        "text": f"message {message_id}",
        "createdAt": "2030-06-01T12:00:00+00:00",
    }
    data.update(fields)
    return ChatMessage.model_validate(data)


def notification(notification_id="n1", **fields):
    data = {
        "id": notification_id,
        "version": 1,
        "type": "game_update",
        "title": "Game updated",
        "createdAt": "2030-06-01T12:00:00+00:00",
    }
    data.update(fields)
    return Notification.model_validate(data)


@pytest.fixture
def make_game():
    return game


@pytest.fixture
def make_series():
    return series


@pytest.fixture
def make_message():
    return message


@pytest.fixture
def make_notification():
    return notification


@pytest.fixture
def store():
    return EntityStore()
