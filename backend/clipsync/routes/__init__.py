# Routes package init
"""
ClipSync Backend — API Routes Package
======================================

What:  HTTP and WebSocket entry points.

Route Inventory:
    - clipboard.py:  POST /api/clipboard          (publish)
                     GET  /api/clipboard          (history, cursor pagination)
                     GET  /api/clipboard/{id}     (one item)
    - sync.py:       GET  /api/sync/pending       (catch-up backlog)
                     POST /api/sync/{id}/ack|skip (explicit decisions)
                     GET  /api/presence           (online devices)
                     DELETE /api/session          (sign out)
    - realtime.py:   WS   /ws?token=              (live channel)
    - health.py:     GET  /health                 (service health check)

Routes stay thin: resolve the caller, call the core, shape the response.
"""
