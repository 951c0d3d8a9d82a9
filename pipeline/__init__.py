"""Ingestion and job pipeline services.

- ingestion: run_sync, trigger_sync, run_provider_sync
- runner: run_pending_jobs, recover_stuck_jobs
- batch_status: get_batch_status, summarize_jobs
- undo: undo_batch
"""
