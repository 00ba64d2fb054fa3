"""
User sync package — keeps the chat application's ``users`` table in step
with the primary application's ``users`` table.

Two independent paths feed the same transform + upsert pipeline: a
LISTEN/NOTIFY change feed for real-time updates, and a scheduled
reconciler that re-scans a trailing window to catch anything the feed
missed.  The coordinator owns scheduling, statistics and health.
"""
