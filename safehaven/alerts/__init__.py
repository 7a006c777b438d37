"""
alerts — Shelter alerts and their lifecycle.

Sub-modules:
    models     — Alert, enums, the open → acknowledged → resolved machine
    lifecycle  — AlertLifecycleManager: create, transitions, listings
"""
