import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    api_base_url: str = "http://localhost:3005"
    socket_path: str = "/api/socket"
    token: str = ""
    user_id: str = ""
    # seconds before an unconfirmed optimistic mutation is rolled back
    mutation_timeout: float = 10.0
    backoff_initial: float = 0.5
    backoff_ceiling: float = 30.0
    typing_ttl: float = 3.0
    message_page_size: int = 100
    tombstone_capacity: int = 1000


def load_settings() -> Settings:
    return Settings(
        api_base_url=os.getenv("PICKUP_API_URL", "http://localhost:3005").rstrip("/"),
        socket_path=os.getenv("PICKUP_SOCKET_PATH", "/api/socket"),
        token=os.getenv("PICKUP_API_TOKEN", "").strip(),
        user_id=os.getenv("PICKUP_USER_ID", "").strip(),
        mutation_timeout=float(os.getenv("PICKUP_MUTATION_TIMEOUT", "10.0")),
        backoff_initial=float(os.getenv("PICKUP_BACKOFF_INITIAL", "0.5")),
        backoff_ceiling=float(os.getenv("PICKUP_BACKOFF_CEILING", "30.0")),
        typing_ttl=float(os.getenv("PICKUP_TYPING_TTL", "3.0")),
        message_page_size=int(os.getenv("PICKUP_MESSAGE_PAGE_SIZE", "100")),
        tombstone_capacity=int(os.getenv("PICKUP_TOMBSTONE_CAPACITY", "1000")),
    )
