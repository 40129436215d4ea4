"""Client-side real-time synchronisation core for the pickup games app.

The package keeps filtered, REST-hydrated views of games, series, chat
messages and notifications consistent with the deltas a server pushes over a
socket.io channel. Most consumers only need :class:`SyncClient` and the
projection factories re-exported here.
"""

from .client import SyncClient
from .core.models import ChatMessage, EntityKind, Game, Notification, Series
from .projections import (
    games_in_city,
    games_on_date,
    games_with_friends,
    messages_in_room,
    my_games,
    notifications_feed,
    series_games,
)

__all__ = [
    "SyncClient",
    "ChatMessage",
    "EntityKind",
    "Game",
    "Notification",
    "Series",
    "games_in_city",
    "games_on_date",
    "games_with_friends",
    "messages_in_room",
    "my_games",
    "notifications_feed",
    "series_games",
]
