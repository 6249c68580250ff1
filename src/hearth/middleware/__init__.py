"""ASGI middleware: request tracing and the WebSocket upgrade path guard."""
