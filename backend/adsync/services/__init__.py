"""Sync engine services.

- meta_graph_client: single Graph API calls with backoff
- meta_paginator: cursor pagination
- meta_batch: batched sub-requests (insights)
- asset_resolver / asset_store: creative images and videos
- meta_sync_service: the orchestrator
- sync_store / sync_lock: persistence and per-integration locking
"""
