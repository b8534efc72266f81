"""
qBittorrent Manager - one dashboard for many qBittorrent instances.

Keeps a local cache of every instance's torrents in sync with the remote Web
APIs and pushes change notifications to browsers over a WebSocket.
"""

from .config import Config
