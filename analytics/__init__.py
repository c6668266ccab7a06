"""
analytics — background collection of per-owner Twitch analytics.

Provides:
  • A DB-backed analytics cache with TTLs and glob invalidation
  • The job ledger (pending → running → completed / failed)
  • Snapshot storage and the owner purge used on disconnect / account switch
  • The background collection manager (daily batches + on-demand queue)
"""
