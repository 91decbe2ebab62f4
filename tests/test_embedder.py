"""Unit tests for the embedding client.  No network: the SDK client is mocked."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import override_settings
from src.errors import EmbeddingDimensionError, EmbeddingError
from src.indexing.embedder import EmbeddingClient


def _response(vectors: list[list[float]], *, reverse: bool = False) -> SimpleNamespace:
    items = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items)


def _echo_client(dimensions: int = 3) -> MagicMock:
    """Mock AsyncOpenAI whose vectors encode each input's position in the full list."""

    async def _create(*, model: str, input: list[str]):
        return _response([[float(text.split("-")[1])] * dimensions for text in input])

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=_create)
    return client


@pytest.mark.asyncio
async def test_batch_embed_empty_makes_no_call():
    client = _echo_client()
    embedder = EmbeddingClient(client, dimensions=3)

    assert await embedder.batch_embed([]) == []
    client.embeddings.create.assert_not_called()


@pytest.mark.asyncio
async def test_batch_embed_preserves_order_across_batches():
    client = _echo_client()
    embedder = EmbeddingClient(client, dimensions=3, batch_size=4, max_workers=2)
    texts = [f"text-{i}" for i in range(10)]

    vectors = await embedder.batch_embed(texts)

    assert [v[0] for v in vectors] == [float(i) for i in range(10)]
    assert client.embeddings.create.await_count == 3
    sent = [call.kwargs["input"] for call in client.embeddings.create.await_args_list]
    assert sorted(len(batch) for batch in sent) == [2, 4, 4]


@pytest.mark.asyncio
async def test_response_items_are_reordered_by_index():
    client = MagicMock()
    client.embeddings.create = AsyncMock(
        return_value=_response([[1.0, 0.0], [0.0, 1.0]], reverse=True)
    )
    embedder = EmbeddingClient(client, dimensions=2)

    assert await embedder.batch_embed(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.asyncio
async def test_batch_concurrency_is_bounded_by_max_workers():
    in_flight = 0
    peak = 0

    async def _create(*, model: str, input: list[str]):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return _response([[0.0]] * len(input))

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=_create)
    embedder = EmbeddingClient(client, dimensions=1, batch_size=1, max_workers=2)

    await embedder.batch_embed([f"t-{i}" for i in range(6)])

    assert peak == 2


@pytest.mark.asyncio
async def test_any_failed_batch_fails_the_whole_call():
    async def _create(*, model: str, input: list[str]):
        if "text-5" in input:
            raise EmbeddingError("boom")
        return _response([[0.0]] * len(input))

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=_create)
    embedder = EmbeddingClient(client, dimensions=1, batch_size=2, max_workers=4)

    with pytest.raises(EmbeddingError):
        await embedder.batch_embed([f"text-{i}" for i in range(8)])


@pytest.mark.asyncio
async def test_sdk_errors_are_wrapped():
    from openai import APIConnectionError

    client = MagicMock()
    client.embeddings.create = AsyncMock(
        side_effect=APIConnectionError(request=MagicMock())
    )
    embedder = EmbeddingClient(client, dimensions=1)

    with pytest.raises(EmbeddingError) as exc_info:
        await embedder.batch_embed(["hello"])
    assert isinstance(exc_info.value.__cause__, APIConnectionError)


@pytest.mark.asyncio
async def test_dimension_mismatch_is_an_error():
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_response([[0.1, 0.2]]))
    embedder = EmbeddingClient(client, dimensions=3)

    with pytest.raises(EmbeddingDimensionError) as exc_info:
        await embedder.embed("query")
    assert (exc_info.value.expected, exc_info.value.actual) == (3, 2)


@pytest.mark.asyncio
async def test_count_mismatch_is_an_error():
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_response([[0.1]]))
    embedder = EmbeddingClient(client, dimensions=1)

    with pytest.raises(EmbeddingError, match="size mismatch"):
        await embedder.batch_embed(["a", "b"])


@pytest.mark.asyncio
async def test_embed_returns_single_vector():
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_response([[0.5, 0.5]]))
    embedder = EmbeddingClient(client, model="test-model", dimensions=2)

    assert await embedder.embed("query") == [0.5, 0.5]
    client.embeddings.create.assert_awaited_once_with(model="test-model", input=["query"])


@pytest.mark.asyncio
async def test_long_inputs_are_truncated_before_sending():
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_response([[0.0]]))
    embedder = EmbeddingClient(client, dimensions=1)
    encoding = MagicMock()
    encoding.encode.side_effect = lambda text: list(range(len(text.split())))
    encoding.decode.side_effect = lambda tokens: " ".join("w" for _ in tokens)
    embedder._encoding = encoding

    with override_settings(embedding_max_input_tokens=5):
        await embedder.batch_embed(["one two three four five six seven"])

    sent = client.embeddings.create.await_args.kwargs["input"]
    assert sent == ["w w w w w"]


def test_availability_follows_api_key():
    with override_settings(embedding_api_key=None):
        assert EmbeddingClient().is_available is False
        assert EmbeddingClient(MagicMock()).is_available is True
    with override_settings(embedding_api_key="sk-test"):
        assert EmbeddingClient().is_available is True


@pytest.mark.asyncio
async def test_missing_api_key_raises_embedding_error():
    with override_settings(embedding_api_key=None):
        with pytest.raises(EmbeddingError):
            await EmbeddingClient().embed("query")
