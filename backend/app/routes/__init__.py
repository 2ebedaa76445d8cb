"""
DoorCast Backend — API Routes Package
=======================================

Route Inventory:
    - events.py:  POST /events              (ingest image or button press)
                  GET  /events              (list metadata, newest first)
                  GET  /events/{id}         (full event, JSON or raw image)
                  DELETE /admin/events      (only with ADMIN_ROUTES_ENABLED)
    - live.py:    WS   /events/live         (real-time notifications)
    - legacy.py:  POST /ping, POST /upload, GET /images, GET /images/id/{id}
                  (paths used by existing doorbell firmware and viewer apps)
    - health.py:  GET  /health

Routes stay thin: parse the transport, call a service, shape the response.
"""
