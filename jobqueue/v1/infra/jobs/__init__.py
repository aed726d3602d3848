"""
Durable background jobs.

This package provides a database-backed job queue with:
- Atomic batch claims (conditional UPDATE with SKIP LOCKED)
- Claim leases renewed by heartbeat and reclaimed after a crash
- A closed JobType registry checked at worker startup
- Linear retry backoff and idempotent finalize
- Backlog health levels for alerting
"""
