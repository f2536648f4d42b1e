"""
HTTP and websocket surface for portal-livesync.

The portal frontend reads live views through this layer; each websocket
connection owns one ViewSession for as long as the page is mounted.
"""

from .app import create_app

__all__ = ["create_app"]
