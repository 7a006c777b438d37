"""
store — Record Store implementations.

Modules:
    base    — RecordStore contract + filter/sort helpers
    memory  — process-local store (tests, single-instance dev server)
    sql     — SQLAlchemy async store with compare-and-set updates
"""
