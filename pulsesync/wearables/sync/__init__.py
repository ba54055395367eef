"""Wearable sync infrastructure.

Modules:
    jobs      — Job names, payloads and the sync window policy
    handlers  — BACKFILL and SYNC job handlers
    scheduler — Daily fan-out of SYNC jobs to every active connection
    storage   — Idempotent upserts and the watermark advance
    dedup     — Idempotency keys and upsert query builder
"""
