"""
ClipSync Backend — Application Package Initializer
===================================================

What: Marks the `clipsync` directory as a Python package.
Who:  Imported by uvicorn (`clipsync.main:app`), Alembic, and pytest.

Architecture Note:
    The backend keeps the usual layered layout, with a realtime layer added
    next to the services:

    ┌─────────────────────────────────────┐
    │   Routes (HTTP + WebSocket /ws)     │  ← transport concerns only
    ├──────────────────┬──────────────────┤
    │  Realtime        │  Services        │
    │  presence        │  identity        │
    │  gateway         │  clipboard store │
    │  broadcaster     │  sync ledger     │
    │  dispatcher      │  pipeline        │
    ├──────────────────┴──────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    `clipsync.core.SyncCore` owns one instance of every realtime and service
    component. It is built when the app starts and torn down when it stops;
    nothing in the realtime layer is a module-level singleton.
"""

__version__ = "1.0.0"
