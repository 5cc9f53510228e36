"""
Voxtier Server - Voice messaging backend for a tiered mentoring hierarchy.

Training directors supervise mentors, mentors coach clients, and every
conversation pairs one client with one mentor. This package implements:
- A SQLite relational store for profiles, conversations and messages
- Materialized conversation membership kept in step with the hierarchy
- A single policy engine that gates every read and write
- An S3 object store for voice recordings
- Policy-filtered realtime fan-out of committed inserts

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│  HTTP / WS  │────▶│   DataService   │
    │    (SPA)    │     │   (FastAPI) │     │ (explicit actor)│
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                             ┌───────────────────────┼───────────────┐
                             ▼                       ▼               ▼
                       ┌───────────┐          ┌────────────┐   ┌──────────┐
                       │  Policy   │          │   SQLite   │   │    S3    │
                       │  Engine   │          │  (+members)│   │ (voices) │
                       └───────────┘          └─────┬──────┘   └──────────┘
                                                    │ after commit
                                                    ▼
                                             ┌─────────────┐
                                             │ RealtimeHub │
                                             └─────────────┘

Invariants:
    - Every data access names its requester explicitly
    - A conversation and its membership rows commit together
    - Denied and missing rows are indistinguishable to the requester
    - Realtime subscribers only receive rows they could read directly

How to change safely:
    - Add policy predicates before exposing new tables
    - Keep schema changes additive
"""

from ._version import __version__

__all__ = ["__version__"]
