"""
API module for the Voxtier server.

This module provides the external interfaces:
- REST endpoints over the data service
- A WebSocket change feed backed by the realtime hub

Invariants:
    - Every request names its requester (X-Actor)
    - Not-found and not-permitted are indistinguishable on reads and deletes

How to change safely:
    - Keep routes thin; authorization belongs to the policy engine
    - Version the API if breaking changes are needed
"""

from .app import create_app

__all__ = [
    "create_app",
]
