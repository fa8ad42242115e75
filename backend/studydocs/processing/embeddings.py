"""
Embedding Service  —  Vertex AI Embeddings with Per-Item Failure Isolation
═══════════════════════════════════════════════════════════════════════════

Design goals:
  • Bounded concurrency: texts are embedded in sequential batches of
    batch_size; calls inside one batch run concurrently via asyncio.gather
  • Failure isolation: one bad text never aborts the batch; successes and
    failures come back as two explicit lists
  • Rate-limit friendliness: a short pause between batches
  • Testability: Settings and the httpx client are injected

Provider contract (Vertex AI :predict):
  POST {endpoint}
  headers: x-goog-api-key: <key>
  body:    {"instances": [{"content": "<text>"}]}
  reply:   {"predictions": [{"embeddings": {"values": [...]}}]}

Response parsing:
  An ordered tuple of pure shape matchers (payload → vector | None); the
  first one that yields a non-empty vector wins.

Retry policy:
  None here. Transient provider failures surface as ProviderError and the
  processing queue owns job-level retries.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import httpx

from studydocs.core.config import Settings
from studydocs.core.exceptions import (
    DimensionMismatchError,
    EmptyInputError,
    EmptyResultError,
    ProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingVector:
    """
    One embedded text.

    source_text is the text the caller passed in (before truncation) so
    downstream code can match vectors back to chunks by equality.
    """
    values:      list[float]
    source_text: str

    @property
    def dimension(self) -> int:
        return len(self.values)


@dataclass
class EmbeddingFailure:
    index: int     # position in the input list
    text:  str
    error: str


@dataclass
class BatchEmbeddingResult:
    """
    embeddings : successes, in input order
    failures   : one entry per text that could not be embedded
    """
    embeddings: list[EmbeddingVector]  = field(default_factory=list)
    failures:   list[EmbeddingFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.embeddings) + len(self.failures)


# ---------------------------------------------------------------------------
# Response shape matchers
# ---------------------------------------------------------------------------

VectorMatcher = Callable[[Any], Optional[list]]


def _first_prediction(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        return None
    predictions = payload.get("predictions")
    if not isinstance(predictions, list) or not predictions:
        return None
    first = predictions[0]
    return first if isinstance(first, dict) else None


def match_embeddings_values(payload: Any) -> Optional[list]:
    """predictions[0].embeddings.values"""
    prediction = _first_prediction(payload)
    if prediction is None:
        return None
    embeddings = prediction.get("embeddings")
    if not isinstance(embeddings, dict):
        return None
    values = embeddings.get("values")
    return values if isinstance(values, list) and values else None


def match_prediction_values(payload: Any) -> Optional[list]:
    """predictions[0].values"""
    prediction = _first_prediction(payload)
    if prediction is None:
        return None
    values = prediction.get("values")
    return values if isinstance(values, list) and values else None


VECTOR_MATCHERS: tuple[VectorMatcher, ...] = (
    match_embeddings_values,
    match_prediction_values,
)


def extract_vector(payload: Any, matchers: Sequence[VectorMatcher] = VECTOR_MATCHERS) -> Optional[list]:
    for matcher in matchers:
        values = matcher(payload)
        if values:
            return values
    return None


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between a and b, in [-1, 1].

    Raises DimensionMismatchError when the lengths differ; returns 0.0 when
    either vector has zero magnitude.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot    = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot    += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """
    Stateless apart from configuration. One instance per worker process.

    Usage:
        service = EmbeddingService(get_settings())
        vector  = await service.generate_embedding("some text")
        result  = await service.generate_embeddings_batch(texts, batch_size=5)
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client   = client

        if not settings.vertex_ai_api_key:
            logger.warning("VERTEX_AI_API_KEY not configured; embedding calls will fail")

        logger.info(
            "EmbeddingService configured | project=%s location=%s model=%s dim=%d",
            settings.vertex_ai_project_id, settings.vertex_ai_location,
            settings.embedding_model, settings.embedding_dimension,
        )

    # ------------------------------------------------------------------
    # Configuration getters
    # ------------------------------------------------------------------

    def get_embedding_dimension(self) -> int:
        return self._settings.embedding_dimension

    def get_model_name(self) -> str:
        return self._settings.embedding_model

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    # ------------------------------------------------------------------
    # Single text
    # ------------------------------------------------------------------

    async def generate_embedding(self, text: str) -> EmbeddingVector:
        """
        Embed one text.

        Raises:
            EmptyInputError   text is empty or whitespace
            ProviderError     missing API key, transport, HTTP or JSON failure
            EmptyResultError  the provider answered without a vector
            DimensionMismatchError  the vector length differs from embedding_dimension
        """
        if not text or not text.strip():
            raise EmptyInputError("Text cannot be empty")

        if not self._settings.vertex_ai_api_key:
            raise ProviderError("VERTEX_AI_API_KEY is not configured")

        max_chars = self._settings.embedding_max_chars
        payload_text = text
        if len(text) > max_chars:
            logger.warning("Embedding input truncated | from=%d to=%d", len(text), max_chars)
            payload_text = text[:max_chars]

        payload = await self._predict(payload_text)

        values = extract_vector(payload)
        if not values:
            raise EmptyResultError("No embedding returned from provider")
        expected = self._settings.embedding_dimension
        if len(values) != expected:
            logger.error("Embedding dimension mismatch | returned=%d configured=%d", len(values), expected)
            raise DimensionMismatchError(len(values), expected)

        logger.debug("Generated embedding | dim=%d", len(values))
        return EmbeddingVector(values=[float(v) for v in values], source_text=text)

    async def embed_query(self, text: str) -> list[float]:
        """Embed a query string for retrieval; same model as ingestion."""
        vector = await self.generate_embedding(text)
        return vector.values

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def generate_embeddings_batch(
        self,
        texts:      Sequence[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> BatchEmbeddingResult:
        """
        Embed many texts, batch_size at a time.

        Never raises for per-item failures: each failure is logged and
        reported in result.failures, and the remaining texts still run.
        result.embeddings keeps the relative input order of the successes.
        """
        result = BatchEmbeddingResult()
        if not texts:
            return result

        batch_size    = max(1, batch_size)
        total_batches = math.ceil(len(texts) / batch_size)

        for batch_no, start in enumerate(range(0, len(texts), batch_size), start=1):
            batch = list(texts[start:start + batch_size])
            logger.debug(
                "Embedding batch | batch=%d/%d size=%d", batch_no, total_batches, len(batch),
            )

            outcomes = await asyncio.gather(
                *(self.generate_embedding(t) for t in batch),
                return_exceptions=True,
            )

            for offset, outcome in enumerate(outcomes):
                if isinstance(outcome, EmbeddingVector):
                    result.embeddings.append(outcome)
                    continue
                if not isinstance(outcome, Exception):
                    # CancelledError and friends are not per-item failures
                    raise outcome
                logger.error(
                    "Embedding failed | index=%d error=%s", start + offset, outcome,
                )
                result.failures.append(
                    EmbeddingFailure(index=start + offset, text=batch[offset], error=str(outcome))
                )

            if start + batch_size < len(texts):
                await asyncio.sleep(self._settings.embedding_batch_pause_seconds)

        logger.info(
            "Embedding batch done | ok=%d failed=%d total=%d",
            len(result.embeddings), len(result.failures), len(texts),
        )
        return result

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _predict(self, text: str) -> Any:
        body    = {"instances": [{"content": text}]}
        headers = {
            "Content-Type":   "application/json",
            "x-goog-api-key": self._settings.vertex_ai_api_key,
        }
        url = self._settings.embedding_endpoint

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers)
            else:
                timeout = self._settings.embedding_timeout_seconds
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Embedding request failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("Embedding response is not valid JSON") from exc
