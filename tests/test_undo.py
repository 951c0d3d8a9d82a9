"""Unit tests for the undo service."""
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from pipeline.undo import undo_batch

UNDO_MODULE = "pipeline.undo"


@pytest.mark.asyncio
@patch(f"{UNDO_MODULE}.jobs_repo.revert_batch", new_callable=AsyncMock)
@patch(f"{UNDO_MODULE}.raw_events_repo.delete_by_batch", new_callable=AsyncMock)
@patch(f"{UNDO_MODULE}.interactions_repo.delete_by_batch", new_callable=AsyncMock)
@patch(f"{UNDO_MODULE}.embeddings_repo.delete_by_batch", new_callable=AsyncMock)
async def test_deletes_derived_data_before_raw_events(
    mock_embeddings, mock_interactions, mock_events, mock_revert, fake_db
):
    session, get_db = fake_db
    user_id = uuid.uuid4()
    batch_id = uuid.uuid4()
    calls = []
    mock_embeddings.side_effect = lambda *a: calls.append("embeddings") or 4
    mock_interactions.side_effect = lambda *a: calls.append("interactions") or 5
    mock_events.side_effect = lambda *a: calls.append("raw_events") or 5
    mock_revert.side_effect = lambda *a: calls.append("jobs") or 3

    with patch(f"{UNDO_MODULE}.get_db", get_db):
        result = await undo_batch(user_id, batch_id)

    assert result.model_dump() == {
        "deleted_events": 5,
        "deleted_interactions": 5,
        "deleted_embeddings": 4,
        "affected_jobs": 3,
    }
    assert calls == ["embeddings", "interactions", "raw_events", "jobs"]
    for mock in (mock_embeddings, mock_interactions, mock_events, mock_revert):
        mock.assert_awaited_once_with(session, user_id, batch_id)


@pytest.mark.asyncio
@patch(f"{UNDO_MODULE}.jobs_repo.revert_batch", new_callable=AsyncMock, return_value=0)
@patch(f"{UNDO_MODULE}.raw_events_repo.delete_by_batch", new_callable=AsyncMock, return_value=0)
@patch(f"{UNDO_MODULE}.interactions_repo.delete_by_batch", new_callable=AsyncMock, return_value=0)
@patch(f"{UNDO_MODULE}.embeddings_repo.delete_by_batch", new_callable=AsyncMock, return_value=0)
async def test_unknown_batch_returns_zeros(mock_embeddings, mock_interactions, mock_events, mock_revert, fake_db):
    _, get_db = fake_db
    with patch(f"{UNDO_MODULE}.get_db", get_db):
        result = await undo_batch(uuid.uuid4(), uuid.uuid4())
    assert result.model_dump() == {
        "deleted_events": 0,
        "deleted_interactions": 0,
        "deleted_embeddings": 0,
        "affected_jobs": 0,
    }
