"""
Permissions Service package for the household application.

This package decides what a user may do with users, households, household
members and messages. It provides:

- app.rules: Condition evaluation, rule model, ability compiler and codec.
- app.cache: Per-user rule set cache (in-process or Redis).
- app.persistence: PostgreSQL role data and packed-permission storage.
- app.events: Role-change events that invalidate and recompute rule sets.
- app.authorization: The ``can`` facade used by callers.
- app.main: HTTP surface for checks, packed rules and invalidation.

Guidelines:
- Role data in PostgreSQL is authoritative; cached rule sets are derived.
- Fail closed: missing data denies, unreadable role data is an error.
"""
