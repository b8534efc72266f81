"""
qBittorrent Manager API Server

Usage:
    python -m qb_manager.server                  # Run on the configured port (3000)
    python -m qb_manager.server --port 8080      # Run on custom port
    python -m qb_manager.server --reload         # Run with auto-reload (development)
"""

import argparse
import uvicorn
from .logger import logger
from .config import Config


def main():
    parser = argparse.ArgumentParser(
        description="qBittorrent Manager API Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m qb_manager.server                    Run on the configured host and port
  python -m qb_manager.server --port 8080        Run on custom port
  python -m qb_manager.server --host 127.0.0.1   Listen on localhost only

Endpoints:
  GET  /api/qb-containers    Configured qBittorrent instances
  GET  /api/torrents         Cached torrents of all instances
  WS   /ws                   Live change notifications
  GET  /docs                 API documentation
        """
    )

    parser.add_argument(
        "--host",
        type=str,
        default=Config.HOST,
        help=f"Host to bind to (default: {Config.HOST})"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=Config.PORT,
        help=f"Port to bind to (default: {Config.PORT})"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (development mode)"
    )

    args = parser.parse_args()

    logger.info(f"Starting qBittorrent Manager API on {args.host}:{args.port}")
    logger.info(f"Syncing every {Config.SYNC_INTERVAL_MS}ms, cache at {Config.SQLITE_DB_PATH}")

    # One process only: the sync engine and the live connections live in memory
    uvicorn.run(
        "qb_manager.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        ws_ping_interval=Config.HEARTBEAT_INTERVAL,
        ws_ping_timeout=Config.HEARTBEAT_INTERVAL,
    )


if __name__ == "__main__":
    main()
