"""Data stores for persistence and caching.

Stores handle:
- PostgreSQL: DB session, ORM bootstrap
- Redis: caching, locks, TTL policies

No ingestion/valuation logic in stores - that belongs in services.
"""
