"""
shelters — Authoritative shelter status.

Sub-modules:
    models      — ShelterStatus, StatusPatch, enums, sparse merge
    reconciler  — StatusReconciler: validate, merge, conditional write, publish
"""
