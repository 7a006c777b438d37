"""
sync — Offline-tolerant field client.

Sub-modules:
    models        — PendingMutation, FailedMutation, FieldSyncState, reports
    queue         — PendingUpdateQueue (SQLite via SQLAlchemy async)
    transport     — SyncTransport: HTTP (httpx) and in-process
    connectivity  — reachability probes
    local_state   — LocalStateCache: authoritative records + optimistic overlays
    engine        — SyncEngine: background drain loop with retry/backoff
    client        — FieldClient: the API the field UI calls
"""
