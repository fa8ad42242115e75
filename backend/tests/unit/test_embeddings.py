"""
Unit Tests — EmbeddingService
══════════════════════════════
Provider HTTP is served by httpx.MockTransport; no network.

Coverage targets:
  ✅ Response shape matchers in isolation
  ✅ cosine_similarity identities and DimensionMismatchError
  ✅ Single embedding: request body, headers, truncation, empty input, HTTP error
  ✅ Batch: [] → no calls; one failing item → N-1 successes in order
"""

from __future__ import annotations

import json
import math

import httpx
import pytest

from studydocs.core.exceptions import (
    DimensionMismatchError,
    EmptyInputError,
    EmptyResultError,
    ProviderError,
)
from studydocs.processing.embeddings import (
    EmbeddingService,
    cosine_similarity,
    extract_vector,
    match_embeddings_values,
    match_prediction_values,
)


def _vector_for(text: str) -> list[float]:
    return [float(len(text)), 1.0, 0.5]


def _make_service(settings, handler, calls: list | None = None) -> EmbeddingService:
    def _record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    return EmbeddingService(settings, client=client)


def _ok_handler(request: httpx.Request) -> httpx.Response:
    content = json.loads(request.content)["instances"][0]["content"]
    return httpx.Response(200, json={"predictions": [{"embeddings": {"values": _vector_for(content)}}]})


@pytest.mark.unit
@pytest.mark.embeddings
class TestVectorMatchers:

    def test_embeddings_values_shape(self):
        payload = {"predictions": [{"embeddings": {"values": [0.1, 0.2]}}]}
        assert match_embeddings_values(payload) == [0.1, 0.2]
        assert match_prediction_values(payload) is None

    def test_prediction_values_shape(self):
        payload = {"predictions": [{"values": [0.3]}]}
        assert match_embeddings_values(payload) is None
        assert match_prediction_values(payload) == [0.3]

    @pytest.mark.parametrize("payload", [
        None,
        "text",
        {},
        {"predictions": []},
        {"predictions": [{"embeddings": {"values": []}}]},
        {"predictions": ["not-a-dict"]},
    ])
    def test_unrecognized_shapes_yield_none(self, payload):
        assert extract_vector(payload) is None

    def test_first_matching_shape_wins(self):
        payload = {"predictions": [{"embeddings": {"values": [1.0]}, "values": [2.0]}]}
        assert extract_vector(payload) == [1.0]


@pytest.mark.unit
@pytest.mark.embeddings
class TestCosineSimilarity:

    def test_identical_vectors(self):
        assert cosine_similarity([0.3, 0.4, 1.2], [0.3, 0.4, 1.2]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1, 0, 0], [0, 1, 0]) == 0

    def test_opposite_vectors(self):
        assert cosine_similarity([1, 2], [-1, -2]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            cosine_similarity([1, 2], [1, 2, 3])


@pytest.mark.unit
@pytest.mark.embeddings
class TestGenerateEmbedding:

    async def test_request_shape_and_result(self, test_settings):
        calls: list[httpx.Request] = []
        service = _make_service(test_settings, _ok_handler, calls)

        vector = await service.generate_embedding("cell membrane")

        assert vector.values == _vector_for("cell membrane")
        assert vector.source_text == "cell membrane"
        assert vector.dimension == 3
        assert len(calls) == 1
        request = calls[0]
        assert request.url.host == "us-central1-aiplatform.googleapis.com"
        assert request.url.path.endswith("/models/text-embedding-004:predict")
        assert request.headers["x-goog-api-key"] == "test-vertex-key"
        assert json.loads(request.content) == {"instances": [{"content": "cell membrane"}]}

    async def test_long_text_is_truncated_but_source_kept(self, test_settings):
        settings = test_settings.model_copy(update={"embedding_max_chars": 10})
        calls: list[httpx.Request] = []
        service = _make_service(settings, _ok_handler, calls)

        text = "x" * 25
        vector = await service.generate_embedding(text)

        assert json.loads(calls[0].content)["instances"][0]["content"] == "x" * 10
        assert vector.source_text == text

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text_rejected_without_call(self, test_settings, text):
        calls: list[httpx.Request] = []
        service = _make_service(test_settings, _ok_handler, calls)

        with pytest.raises(EmptyInputError):
            await service.generate_embedding(text)
        assert calls == []

    async def test_missing_api_key(self, test_settings):
        settings = test_settings.model_copy(update={"vertex_ai_api_key": ""})
        service = _make_service(settings, _ok_handler)

        with pytest.raises(ProviderError):
            await service.generate_embedding("text")

    async def test_http_error_is_provider_error(self, test_settings):
        service = _make_service(test_settings, lambda r: httpx.Response(503, json={"error": "busy"}))

        with pytest.raises(ProviderError):
            await service.generate_embedding("text")

    async def test_response_without_vector(self, test_settings):
        service = _make_service(test_settings, lambda r: httpx.Response(200, json={"predictions": []}))

        with pytest.raises(EmptyResultError):
            await service.generate_embedding("text")

    async def test_wrong_dimension_rejected(self, test_settings):
        settings = test_settings.model_copy(update={"embedding_dimension": 768})
        service = _make_service(settings, _ok_handler)

        with pytest.raises(DimensionMismatchError) as exc_info:
            await service.generate_embedding("hello")
        assert (exc_info.value.left, exc_info.value.right) == (3, 768)

    def test_vector_column_sized_from_settings(self):
        from studydocs.core.config import get_settings
        from studydocs.models.documents import DocumentChunk

        assert DocumentChunk.__table__.c.embedding.type.dim == get_settings().embedding_dimension

    async def test_embed_query_returns_values(self, test_settings):
        service = _make_service(test_settings, _ok_handler)
        assert await service.embed_query("abc") == _vector_for("abc")

    def test_configuration_getters(self, test_settings):
        service = EmbeddingService(test_settings)
        assert service.get_embedding_dimension() == 3
        assert service.get_model_name() == "text-embedding-004"
        assert math.isclose(service.cosine_similarity([1, 1], [1, 1]), 1.0)


@pytest.mark.unit
@pytest.mark.embeddings
class TestGenerateEmbeddingsBatch:

    async def test_empty_list_makes_no_calls(self, test_settings):
        calls: list[httpx.Request] = []
        service = _make_service(test_settings, _ok_handler, calls)

        result = await service.generate_embeddings_batch([])

        assert result.embeddings == []
        assert result.failures == []
        assert calls == []

    async def test_one_failure_keeps_order_of_successes(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            content = json.loads(request.content)["instances"][0]["content"]
            if content == "bad":
                return httpx.Response(500, json={"error": "boom"})
            return _ok_handler(request)

        service = _make_service(test_settings, handler)
        texts = ["alpha", "beta", "bad", "delta", "epsilon", "zeta", "eta"]

        result = await service.generate_embeddings_batch(texts, batch_size=3)

        assert [e.source_text for e in result.embeddings] == ["alpha", "beta", "delta", "epsilon", "zeta", "eta"]
        assert len(result.failures) == 1
        assert result.failures[0].index == 2
        assert result.failures[0].text == "bad"
        assert result.total == len(texts)

    async def test_wrong_dimension_is_a_per_item_failure(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            content = json.loads(request.content)["instances"][0]["content"]
            if content == "short":
                return httpx.Response(200, json={"predictions": [{"values": [0.1, 0.2]}]})
            return _ok_handler(request)

        service = _make_service(test_settings, handler)

        result = await service.generate_embeddings_batch(["one", "short", "three"])

        assert [e.source_text for e in result.embeddings] == ["one", "three"]
        assert [f.index for f in result.failures] == [1]
        assert "dimension" in result.failures[0].error

    async def test_every_text_sent_once(self, test_settings):
        calls: list[httpx.Request] = []
        service = _make_service(test_settings, _ok_handler, calls)

        await service.generate_embeddings_batch([f"t{i}" for i in range(11)], batch_size=5)

        sent = sorted(json.loads(c.content)["instances"][0]["content"] for c in calls)
        assert sent == sorted(f"t{i}" for i in range(11))
