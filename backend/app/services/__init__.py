"""
DoorCast Backend — Services Layer
===================================

Service Inventory:
    - BlobService:          durable payload files (write, verify, clean up)
    - EventStore:           events table + blobs; ids, timestamps, pagination
    - IngestionPipeline:    validate → commit → publish
    - SubscriptionRegistry: live viewers and their bounded channels
    - Broadcaster:          non-blocking fan-out and per-viewer delivery loops
    - QueryService:         read-only access for viewers

Instances are built per application by app.dependencies.build_services().
"""
