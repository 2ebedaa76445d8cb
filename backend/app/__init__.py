"""
DoorCast Backend — Application Package
========================================

What: Doorbell event ingestion and real-time fan-out service.
Who:  Imported by uvicorn (app.main:app), Alembic and pytest.

Architecture Note:

    ┌─────────────────────────────────────────────┐
    │   Routes: /events, /events/live, legacy     │  ← HTTP / WebSocket only
    ├─────────────────────────────────────────────┤
    │   IngestionPipeline        QueryService     │  ← orchestration
    ├──────────────────────┬──────────────────────┤
    │   EventStore         │  Broadcaster         │
    │   (rows + blobs)     │  SubscriptionRegistry│  ← durable / live state
    ├──────────────────────┴──────────────────────┤
    │   Async SQLAlchemy        storage/ on disk  │  ← persistence
    └─────────────────────────────────────────────┘

    An event is committed to the store before the Broadcaster hears of it;
    the Broadcaster never awaits a viewer.
"""

__version__ = "1.0.0"
