# Services package init
"""
ClipSync Backend — Services Layer
==================================

What:  Business logic between the transports (HTTP, WebSocket) and the database.
How:   Services receive their collaborators (session factory, settings, other
       services) in their constructor; SyncCore wires them once at startup.

Service Inventory:
    - IdentityService (abstract): credential → (user, device)
    - SessionIdentityService:     DB-backed bearer sessions with expiry and revocation
    - ClipboardStore:             clipboard items and the user's device list
    - SyncLedger:                 durable per-device sync records
    - ClipboardPipeline:          validate → persist → record → fan out → reconcile
"""
