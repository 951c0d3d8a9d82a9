"""Repository layer for the provider ingestion pipeline.

Provides insert-if-absent, status and batch-scoped queries for:
- raw_events: insert_if_absent, get_latest_occurred_at, get_unnormalized,
              link_contact, count_by_batch, delete_by_batch
- interactions: insert_if_absent, get_unlinked, get_unembedded, link_contact,
                delete_by_batch
- embeddings: insert_if_absent, delete_by_batch
- contacts: get_by_email, find_by_identity, add_identity, create
- jobs: enqueue, enqueue_many, ensure_stage_job, claim_jobs, mark_done,
        mark_failed, defer, requeue_stuck, get_batch_jobs, get_stage_statuses,
        get_job_counts, revert_batch
"""
