"""
DoorCast Backend — Middleware Package
=======================================

What:  Cross-cutting concerns applied to every HTTP request.

Middleware Chain (outermost first):
    Request → [Request ID] → [Logging] → [Rate Limit] → [GZip] → [CORS] → Route

    1. Request ID first: every later log line, including rate-limit
       rejections, carries the correlation ID
    2. Logging: records status and duration of everything below it,
       429s included
    3. Rate Limit: rejects floods before the body is read

WebSocket connections pass through all of them untouched.
"""
