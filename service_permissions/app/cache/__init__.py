"""
Cache package for Permissions Service.

Stores packed per-user rule sets with a TTL, in process or in Redis, and
coalesces concurrent recompilations for the same user.
"""
