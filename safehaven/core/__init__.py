"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    middleware      — request logging, correlation IDs
    health          — health check aggregation
    database        — async SQLAlchemy engine/session helpers
    redis_pool      — shared Redis client
    rate_limit      — fixed-window limiter over injectable counter stores
    identity        — actor context from the external auth layer
    validation      — accumulating validators for status and alert input
"""
