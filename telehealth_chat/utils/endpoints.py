"""
Transport endpoint selection.
Local development hosts map to a fixed localhost port; anything else maps to the
production origin with the caller's scheme preserved.
"""
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

from telehealth_chat.config import Settings, get_settings

EndpointResolver = Callable[[], str]


def is_local_host(hostname: str | None, settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    return (hostname or "").lower() in settings.local_hosts


def resolve_socket_url(origin: str | None = None, settings: Settings | None = None) -> str:
    """Return the Socket.IO origin for the deployment `origin` is running against.

    `origin` is whatever the embedding app knows about its own location (a page URL,
    or the REST base URL); it defaults to the configured API base.
    """
    settings = settings or get_settings()
    parts = urlsplit(origin or settings.API_BASE_URL)

    if is_local_host(parts.hostname, settings):
        return settings.SOCKET_LOCAL_URL.rstrip("/")

    target = urlsplit(settings.SOCKET_PRODUCTION_URL)
    scheme = parts.scheme or target.scheme
    return urlunsplit((scheme, target.netloc, target.path.rstrip("/"), "", ""))


def make_endpoint_resolver(origin: str | None = None, settings: Settings | None = None) -> EndpointResolver:
    """Bind `resolve_socket_url` to an origin so it can be handed to the connection manager."""
    def _resolver() -> str:
        return resolve_socket_url(origin, settings)
    return _resolver
