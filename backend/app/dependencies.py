"""
DoorCast Backend — Service Wiring
===================================

What:  Builds the service graph once per application and hands services to
       route handlers through FastAPI dependencies.
Why:   The registry and the store's commit lock are process-wide state; every
       route in one app must share the same instances, while each test app
       gets fresh ones.
How:   create_app() stores a ServiceContainer on app.state.services; the
       getters below read it from the current request or WebSocket.

Graph:
    BlobService ─┐
                 ├─▶ EventStore ─┬─▶ IngestionPipeline
    sessions ────┘               └─▶ QueryService
    SubscriptionRegistry ─▶ Broadcaster ─▶ IngestionPipeline
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.requests import HTTPConnection

from app.database import async_session_factory
from app.services.blob_service import BlobService
from app.services.broadcaster import Broadcaster
from app.services.event_store import EventStore
from app.services.ingestion import IngestionPipeline
from app.services.query_service import QueryService
from app.services.registry import SubscriptionRegistry


@dataclass
class ServiceContainer:
    blobs: BlobService
    store: EventStore
    registry: SubscriptionRegistry
    broadcaster: Broadcaster
    pipeline: IngestionPipeline
    queries: QueryService


def build_services(
    session_factory: Optional[async_sessionmaker] = None,
    storage_root: Optional[str] = None,
) -> ServiceContainer:
    blobs = BlobService(storage_root)
    store = EventStore(session_factory or async_session_factory, blobs)
    registry = SubscriptionRegistry()
    broadcaster = Broadcaster(registry)
    return ServiceContainer(
        blobs=blobs,
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        pipeline=IngestionPipeline(store, broadcaster),
        queries=QueryService(store),
    )


# ── FastAPI Dependencies ──────────────────────────────────────────────────
# HTTPConnection covers both Request and WebSocket


def get_services(connection: HTTPConnection) -> ServiceContainer:
    return connection.app.state.services


def get_pipeline(connection: HTTPConnection) -> IngestionPipeline:
    return get_services(connection).pipeline


def get_query_service(connection: HTTPConnection) -> QueryService:
    return get_services(connection).queries


def get_store(connection: HTTPConnection) -> EventStore:
    return get_services(connection).store


def get_registry(connection: HTTPConnection) -> SubscriptionRegistry:
    return get_services(connection).registry
