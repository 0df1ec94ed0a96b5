"""Tests for capability output validation and backend selection."""

from __future__ import annotations

import math
from unittest.mock import patch

import numpy as np
import pytest

from codeweave.config.models import EmbeddingConfig, RerankConfig
from codeweave.core.errors import CapabilityUnavailable, InvalidCapabilityOutput
from codeweave.query.capabilities import (
    FastEmbedEmbedder,
    FastEmbedReranker,
    NullEmbedder,
    NullReranker,
    create_embedder,
    create_reranker,
    validate_embeddings,
    validate_scores,
)


class TestValidateEmbeddings:
    def test_accepts_expected_shape(self) -> None:
        matrix = validate_embeddings([[1.0, 0.0], [0.5, 0.5]], expected=2, dim=2)

        assert matrix.shape == (2, 2)
        assert matrix.dtype == np.float32

    def test_empty_request_needs_no_output(self) -> None:
        assert validate_embeddings(None, expected=0, dim=4).shape == (0, 4)

    @pytest.mark.parametrize(
        ("raw", "reason"),
        [
            (None, "no output"),
            ([[1.0, 0.0]], "expected shape"),
            ([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]], "expected shape"),
            ([[1.0, math.nan], [1.0, 0.0]], "non-finite"),
            ([[0.0, 0.0], [1.0, 0.0]], "zero-norm"),
            ([["a", "b"], [1.0, 0.0]], "not numeric"),
        ],
    )
    def test_rejects_malformed_output(self, raw: object, reason: str) -> None:
        with pytest.raises(InvalidCapabilityOutput, match=reason):
            validate_embeddings(raw, expected=2, dim=2)


class TestValidateScores:
    def test_accepts_one_float_per_document(self) -> None:
        assert validate_scores(np.array([0.5, 2]), expected=2) == [0.5, 2.0]

    @pytest.mark.parametrize(
        ("raw", "reason"),
        [
            (None, "unexpected output type"),
            ("0.5", "unexpected output type"),
            ([0.5], "expected 2 scores"),
            ([0.5, math.inf], "non-finite"),
            ([0.5, "high"], "not numeric"),
        ],
    )
    def test_rejects_malformed_output(self, raw: object, reason: str) -> None:
        with pytest.raises(InvalidCapabilityOutput, match=reason):
            validate_scores(raw, expected=2)


class TestBackends:
    def test_provider_none_selects_null_variants(self) -> None:
        embedder = create_embedder(EmbeddingConfig(provider="none"))
        reranker = create_reranker(RerankConfig(provider="none"))

        assert isinstance(embedder, NullEmbedder)
        assert isinstance(reranker, NullReranker)
        assert embedder.available is False
        assert reranker.available is False

    def test_fastembed_provider_loads_lazily(self) -> None:
        embedder = create_embedder(EmbeddingConfig(model_name="some/model", dim=8))
        reranker = create_reranker(RerankConfig())

        assert isinstance(embedder, FastEmbedEmbedder)
        assert isinstance(reranker, FastEmbedReranker)
        assert embedder.dim == 8
        assert embedder._model is None
        assert embedder.available is True

    @pytest.mark.asyncio
    async def test_null_embedder_raises_unavailable(self) -> None:
        with pytest.raises(CapabilityUnavailable):
            await NullEmbedder().embed(["query"])

    @pytest.mark.asyncio
    async def test_null_reranker_raises_unavailable(self) -> None:
        with pytest.raises(CapabilityUnavailable):
            await NullReranker().rerank("query", ["doc"])

    def test_model_load_failure_marks_embedder_unavailable(self) -> None:
        embedder = FastEmbedEmbedder("missing/model", dim=4)

        with (
            patch("fastembed.TextEmbedding", side_effect=RuntimeError("download failed")),
            pytest.raises(CapabilityUnavailable, match="download failed"),
        ):
            embedder.embed_sync(["text"])

        assert embedder.available is False
        # The failure is remembered; no second load attempt
        with pytest.raises(CapabilityUnavailable):
            embedder.embed_batch(["text"])
