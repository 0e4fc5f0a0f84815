from __future__ import annotations

import logging
import sys
import types
from pathlib import Path

import numpy as np
import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from healthtrack.similar_cases.config import EmbeddingConfig
from healthtrack.similar_cases.core import embeddings as embeddings_mod
from healthtrack.similar_cases.errors import InvalidInput, ProviderUnavailable
from healthtrack.similar_cases.testing import HashingEmbeddingProvider


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def json(self):
        return self._payload


class _FakeSession:
    def __init__(self, responses=None, exc: Exception | None = None) -> None:
        self.responses = list(responses or [])
        self.exc = exc
        self.posts: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.responses.pop(0)

    def close(self) -> None:
        pass


class _StubEmbedder:
    def __init__(self) -> None:
        self.calls = 0

    def encode(self, texts, batch_size=32, show_progress_bar=False, convert_to_numpy=True, normalize_embeddings=True):
        self.calls += 1
        return np.tile(np.array([3.0, 4.0], dtype=np.float32), (len(texts), 1))


def _cfg(**overrides) -> EmbeddingConfig:
    cfg = EmbeddingConfig()
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def test_text_at_budget_is_untouched():
    provider = HashingEmbeddingProvider(dim=8)
    text = "a" * 286

    provider.embed([text])

    assert provider.calls[-1] == [text]
    assert provider.stats["truncated"] == 0


def test_text_over_budget_is_cut_and_logged(caplog):
    provider = HashingEmbeddingProvider(dim=8)
    text = "b" * 287

    with caplog.at_level(logging.WARNING, logger=embeddings_mod.LOGGER.name):
        provider.embed([text])

    assert provider.calls[-1] == ["b" * 286]
    assert provider.stats["truncated"] == 1
    assert any("truncated" in rec.getMessage() for rec in caplog.records)


def test_truncation_keeps_prefix():
    provider = HashingEmbeddingProvider(dim=8, max_chars=5)

    assert provider.prepare_texts(["abcdefgh", "abc"]) == ["abcde", "abc"]


def test_empty_batch_makes_no_backend_call():
    provider = HashingEmbeddingProvider(dim=8)

    assert provider.embed([]) == []
    assert provider.calls == []


def test_non_string_input_is_invalid():
    provider = HashingEmbeddingProvider(dim=8)

    with pytest.raises(InvalidInput):
        provider.embed(["ok", 3])


def test_vectors_are_unit_length_and_fixed_size():
    provider = HashingEmbeddingProvider(dim=16)

    vectors = provider.embed(["chest pain", "shortness of breath"])

    assert len(vectors) == 2
    for vec in vectors:
        assert len(vec) == 16
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)


def test_wrong_dimension_from_backend_is_rejected():
    class _Bad(embeddings_mod.EmbeddingProvider):
        backend_name = "bad"

        def _embed_batch(self, texts):
            return [[1.0, 0.0, 0.0] for _ in texts]

    provider = _Bad(model_name="bad", dim=4)

    with pytest.raises(ProviderUnavailable):
        provider.embed(["x"])


def test_missing_vectors_from_backend_are_rejected():
    class _Short(embeddings_mod.EmbeddingProvider):
        def _embed_batch(self, texts):
            return [[1.0, 0.0]]

    with pytest.raises(ProviderUnavailable):
        _Short(model_name="short").embed(["x", "y"])


def test_endpoint_provider_posts_instances_and_unwraps_predictions():
    session = _FakeSession([_FakeResponse({"predictions": [[[1.0, 0.0, 0.0]], [[0.0, 2.0, 0.0]]]})])
    cfg = _cfg(backend="endpoint", endpoint_url="https://example.invalid/predict", endpoint_token="tok", dim=3)
    provider = embeddings_mod.EndpointProvider(cfg, session=session)

    vectors = provider.embed(["first", "second"])

    assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    post = session.posts[0]
    assert post["json"] == {"instances": [{"inputs": "first"}, {"inputs": "second"}]}
    assert post["headers"]["Authorization"] == "Bearer tok"
    assert post["timeout"] == cfg.timeout


def test_endpoint_network_failure_is_provider_unavailable():
    session = _FakeSession(exc=requests.exceptions.ConnectionError("boom"))
    cfg = _cfg(backend="endpoint", endpoint_url="https://example.invalid/predict", dim=None)
    provider = embeddings_mod.EndpointProvider(cfg, session=session)

    with pytest.raises(ProviderUnavailable):
        provider.embed(["x"])


def test_endpoint_error_status_is_provider_unavailable():
    session = _FakeSession([_FakeResponse({"error": "down"}, status_code=503)])
    cfg = _cfg(backend="endpoint", endpoint_url="https://example.invalid/predict", dim=None)
    provider = embeddings_mod.EndpointProvider(cfg, session=session)

    with pytest.raises(ProviderUnavailable):
        provider.embed(["x"])


def test_hf_inference_mean_pools_token_vectors():
    session = _FakeSession([_FakeResponse([[[1.0, 0.0], [0.0, 1.0]]])])
    cfg = _cfg(backend="hf-inference", hf_token="hf_x", hf_base_url="https://hf.invalid/models/", dim=2)
    provider = embeddings_mod.HFInferenceProvider(cfg, session=session)

    [vec] = provider.embed(["note"])

    assert vec == pytest.approx([2 ** -0.5, 2 ** -0.5], abs=1e-6)
    assert session.posts[0]["url"] == f"https://hf.invalid/models/{cfg.model_name}/pipeline/feature-extraction"
    assert session.posts[0]["json"] == {"inputs": "note"}


def test_hf_inference_requires_token(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HF_TOKEN", raising=False)

    with pytest.raises(ValueError):
        embeddings_mod.HFInferenceProvider(_cfg(hf_token=None))


def test_sentence_transformer_provider_uses_injected_model():
    model = _StubEmbedder()
    provider = embeddings_mod.SentenceTransformerProvider(_cfg(dim=2), model=model)

    vectors = provider.embed(["a", "b"])

    assert model.calls == 1
    assert vectors[0] == pytest.approx([0.6, 0.8])


def test_azure_provider_orders_by_index():
    data = [
        types.SimpleNamespace(index=1, embedding=[0.0, 1.0]),
        types.SimpleNamespace(index=0, embedding=[1.0, 0.0]),
    ]
    client = types.SimpleNamespace(
        embeddings=types.SimpleNamespace(create=lambda model, input: types.SimpleNamespace(data=data))
    )
    provider = embeddings_mod.AzureOpenAIEmbeddingProvider(_cfg(azure_deployment="emb", dim=2), client=client)

    assert provider.embed(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]


def test_factory_selects_backend_and_rejects_unknown():
    provider = embeddings_mod.build_embedding_provider(_cfg(backend="hashing", dim=12))

    assert isinstance(provider, HashingEmbeddingProvider)
    assert provider.dim == 12
    with pytest.raises(ValueError):
        embeddings_mod.build_embedding_provider(_cfg(backend="nope"))


def test_signature_distinguishes_models():
    a = HashingEmbeddingProvider(dim=8)
    b = HashingEmbeddingProvider(dim=16)

    assert a.signature != b.signature
