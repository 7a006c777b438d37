"""
notifications — Narrow, publish-only fan-out of record changes.

Sub-modules:
    bus        — NotificationBus backends (in-memory, Redis pub/sub)
    publisher  — best-effort envelope + timeout wrapper used by the core

Topics:
    shelter.updated, alert.created, alert.acknowledged, alert.resolved
"""
