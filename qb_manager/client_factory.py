"""
Factory and registry for qBittorrent session clients.

get_client builds a QBittorrentClient from an Instance row. ClientRegistry keeps
one client per instance id so the session cookie survives between sync ticks
and API calls, and rebuilds it when the instance's connection details change.
"""

from typing import TYPE_CHECKING, Callable, Dict, Tuple

from .logger import logger
from .qb_client import QBittorrentClient

if TYPE_CHECKING:
    from .models import Instance


def get_client(instance: "Instance") -> QBittorrentClient:
    """
    Create a session client for the given instance configuration.

    Args:
        instance: Instance model with connection details

    Returns:
        An unauthenticated QBittorrentClient; it logs in on first use
    """
    return QBittorrentClient(
        host=instance.host,
        port=instance.port,
        username=instance.username,
        password=instance.secret,
    )


def _fingerprint(instance: "Instance") -> Tuple:
    return (instance.host, instance.port, instance.username, instance.secret)


class ClientRegistry:
    """
    One session client per instance.

    Only touched from the event loop thread; the clients themselves may be used
    from worker threads.
    """

    def __init__(self, factory: Callable[["Instance"], QBittorrentClient] = get_client):
        self._factory = factory
        self._clients: Dict[int, Tuple[Tuple, QBittorrentClient]] = {}

    def get(self, instance: "Instance") -> QBittorrentClient:
        fingerprint = _fingerprint(instance)
        cached = self._clients.get(instance.id)
        if cached is not None and cached[0] == fingerprint:
            return cached[1]

        if cached is not None:
            logger.info(f"Connection details for instance {instance.id} changed, replacing client")
            cached[1].close()

        client = self._factory(instance)
        self._clients[instance.id] = (fingerprint, client)
        return client

    def discard(self, instance_id: int) -> None:
        """Forget the client of an instance that was edited or deleted."""
        cached = self._clients.pop(instance_id, None)
        if cached is not None:
            cached[1].close()

    def clear(self) -> None:
        for instance_id in list(self._clients):
            self.discard(instance_id)

    def __len__(self) -> int:
        return len(self._clients)
