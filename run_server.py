#!/usr/bin/env python3
"""
qBittorrent Manager Server Runner

Convenience wrapper around qb_manager.server.main() for running from the
project root.

Usage:
    python run_server.py               # Run on default port
    python run_server.py --port 8080   # Run on custom port
    python run_server.py --reload      # Run with auto-reload (development)
"""

from qb_manager.server import main

if __name__ == "__main__":
    main()
