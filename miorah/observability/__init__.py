"""Request IDs, structlog configuration and an in-memory metrics snapshot.

Everything here is process-local: metrics reset on restart and are only meant
for the admin dashboard and local debugging.
"""
