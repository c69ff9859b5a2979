# Realtime package init
"""
ClipSync Backend — Realtime Layer
==================================

What:  Everything that touches live connections.

Module Inventory:
    - channels.py:     Channel abstraction (WebSocket, in-process queue)
    - presence.py:     Presence Registry (user → live connections)
    - gateway.py:      Connection Gateway (per-connection state machine)
    - broadcaster.py:  Fan-out Broadcaster (concurrent, isolated sends)
    - dispatcher.py:   Inbound realtime message routing

The realtime layer holds no durable state. Anything that must survive a
disconnect or a restart lives in the Sync Ledger.
"""
