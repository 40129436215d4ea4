from __future__ import annotations

import asyncio
import datetime as dt
import logging

from .adapters.base import static_token
from .adapters.http import HttpSportsApi
from .channel import Backoff, ChannelClient, ConnectionStatus
from .client import SyncClient
from .config import load_settings
from .logging_config import setup_logging
from .projections import Projection, games_on_date, notifications_feed


def main() -> int:
    log = setup_logging()
    settings = load_settings()
    if not settings.token:
        log.error(
            "PICKUP_API_TOKEN is not set. "
            "Export it in your environment before running."
        )
        return 2
    tokens = static_token(settings.token)
    api = HttpSportsApi(settings.api_base_url, tokens)
    channel = ChannelClient(
        settings.api_base_url,
        tokens,
        socketio_path=settings.socket_path,
        backoff=Backoff(settings.backoff_initial, ceiling=settings.backoff_ceiling),
    )
    client = SyncClient(api, channel, user_id=settings.user_id, settings=settings)

    def report(projection: Projection) -> None:
        log.info("%s: %d items", projection.spec.name, len(projection.ids))

    def on_status(status: ConnectionStatus) -> None:
        level = logging.ERROR if status is ConnectionStatus.FAILED else logging.INFO
        log.log(level, "channel %s", status.value)

    async def runner() -> int:
        client.on_status(on_status)
        try:
            await client.start()
            await client.subscribe(notifications_feed(), report)
            await client.subscribe(games_on_date(dt.date.today().isoformat()), report)
            await channel.wait_closed()
        except (KeyboardInterrupt, asyncio.CancelledError):
            log.info("Shutting down...")
        finally:
            await client.close()
            await api.close()
        return 1 if channel.status is ConnectionStatus.FAILED else 0

    try:
        return asyncio.run(runner())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
