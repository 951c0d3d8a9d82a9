"""Unit tests for the embed stage."""
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from db.models import Interaction, Job
from stages.embed import embedding_text, handle_embed

EMBED_MODULE = "stages.embed"


def _interaction(subject=None, body=None, user_id=None, batch_id=None) -> Interaction:
    return Interaction(
        id=uuid.uuid4(),
        user_id=user_id or uuid.uuid4(),
        subject=subject,
        body_text=body,
        batch_id=batch_id,
    )


def test_embedding_text_joins_subject_and_body():
    assert embedding_text(_interaction("Hello", "World")) == "Hello\n\nWorld"
    assert embedding_text(_interaction(None, "  body only ")) == "body only"
    assert embedding_text(_interaction(" ", None)) is None


@pytest.mark.asyncio
@patch(f"{EMBED_MODULE}.get_embedding_model", return_value="test-model")
@patch(f"{EMBED_MODULE}.embeddings_repo.insert_if_absent", new_callable=AsyncMock)
@patch(f"{EMBED_MODULE}.embed_texts", new_callable=AsyncMock)
@patch(f"{EMBED_MODULE}.interactions_repo.get_unembedded", new_callable=AsyncMock)
async def test_embeds_in_chunks(mock_unembedded, mock_embed, mock_insert, mock_model, monkeypatch):
    monkeypatch.setenv("EMBED_BATCH_SIZE", "2")
    user_id = uuid.uuid4()
    batch_id = uuid.uuid4()
    items = [_interaction(f"s{i}", "b", user_id, batch_id) for i in range(3)]
    items.append(_interaction(None, None, user_id, batch_id))
    mock_unembedded.return_value = items
    mock_embed.side_effect = lambda texts, model: [[0.1, 0.2] for _ in texts]
    mock_insert.side_effect = lambda session, rows: len(rows)
    job = Job(id=uuid.uuid4(), user_id=user_id, kind="embed", batch_id=batch_id, payload={})

    result = await handle_embed(object(), job)

    assert result == {"embedded": 3, "skipped": 1}
    assert [len(c.args[0]) for c in mock_embed.await_args_list] == [2, 1]
    first_rows = mock_insert.await_args_list[0].args[1]
    assert first_rows[0]["owner_type"] == "interaction"
    assert first_rows[0]["owner_id"] == items[0].id
    assert first_rows[0]["meta"] == {"model": "test-model"}
    assert first_rows[0]["batch_id"] == batch_id


@pytest.mark.asyncio
@patch("tools.embedding_tools.init_vertex_ai")
@patch("tools.embedding_tools.litellm.aembedding", new_callable=AsyncMock)
async def test_embed_texts_restores_input_order(mock_aembedding, mock_init):
    from tools.embedding_tools import embed_texts

    mock_aembedding.return_value = SimpleNamespace(data=[
        {"index": 1, "embedding": [0.2]},
        {"index": 0, "embedding": [0.1]},
    ])

    vectors = await embed_texts(["first", "second"], model="test-model")

    assert vectors == [[0.1], [0.2]]
    assert mock_aembedding.await_args.kwargs["model"] == "test-model"
    assert mock_aembedding.await_args.kwargs["input"] == ["first", "second"]
    mock_init.assert_called_once()


@pytest.mark.asyncio
@patch("tools.embedding_tools.litellm.aembedding", new_callable=AsyncMock)
async def test_embed_texts_skips_provider_for_empty_input(mock_aembedding):
    from tools.embedding_tools import embed_texts

    assert await embed_texts([]) == []
    mock_aembedding.assert_not_awaited()
