"""
API layer for the export server.

Provides the HTTP (aiohttp) interface for triggering exports, polling job
status and reporting delivery outcomes.
"""

from .http_server import create_http_app

__all__ = ["create_http_app"]
