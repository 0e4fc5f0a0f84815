"""Pluggable embedding providers.

Four backends are supported:

* ``sentence-transformers`` runs a local SentenceTransformer model
* ``hf-inference`` calls a hosted Hugging Face feature-extraction model
* ``endpoint`` calls a custom deployed prediction endpoint
  (``{"instances": [{"inputs": text}]}`` in, ``predictions[i][0]`` out)
* ``azure-openai`` calls an Azure OpenAI embeddings deployment

Every backend shares the same contract through :class:`EmbeddingProvider`:
inputs longer than the character budget are cut to their first ``max_chars``
characters (and the cut is logged), an empty batch short-circuits to ``[]``,
and every returned vector must have the configured dimension. Backends never
retry; retry policy lives with the caller.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

import numpy as np
import requests

from ..errors import InvalidInput, ProviderUnavailable

if TYPE_CHECKING:  # pragma: no cover - avoid runtime circular import
    from ..config import EmbeddingConfig

try:  # pragma: no cover - optional dependency
    from sentence_transformers import SentenceTransformer  # type: ignore
except Exception:  # pragma: no cover - handled when backend is constructed
    SentenceTransformer = None  # type: ignore

try:  # pragma: no cover - optional dependency
    from openai import AzureOpenAI  # type: ignore
except Exception:  # pragma: no cover - handled when backend is constructed
    AzureOpenAI = None  # type: ignore

LOGGER = logging.getLogger(__name__)


def _detect_device():
    explicit = os.getenv("EMBEDDING_DEVICE") or os.getenv("MODEL_DEVICE")
    if explicit:
        return explicit
    if os.getenv("CPU_ONLY", "0") == "1":
        return "cpu"
    try:
        import torch
        if getattr(torch, "cuda", None) and torch.cuda.is_available():
            return "cuda"
    except Exception:
        pass
    return "cpu"


def _l2_normalize(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


class EmbeddingProvider:
    """Base class shared by all embedding backends."""

    backend_name = "base"

    def __init__(
        self,
        *,
        model_name: str = "",
        max_chars: int = 286,
        dim: Optional[int] = None,
        normalize: bool = True,
    ):
        if int(max_chars) <= 0:
            raise ValueError("max_chars must be positive")
        self.model_name = model_name
        self.max_chars = int(max_chars)
        self.dim = int(dim) if dim else None
        self.normalize = bool(normalize)
        self._lock = threading.Lock()
        self.stats = {"calls": 0, "texts": 0, "truncated": 0}

    @property
    def signature(self) -> str:
        return f"{self.backend_name}:{self.model_name}:{self.dim or 'auto'}:{self.max_chars}"

    def _bump(self, key: str, n: int = 1) -> None:
        with self._lock:
            self.stats[key] = self.stats.get(key, 0) + n

    def prepare_texts(self, texts: Sequence[str]) -> List[str]:
        processed: List[str] = []
        for i, text in enumerate(texts):
            if not isinstance(text, str):
                raise InvalidInput(details=[{"path": f"texts[{i}]", "message": "Expected a string."}])
            if len(text) > self.max_chars:
                LOGGER.warning(
                    "Embedding input truncated from %d to %d characters",
                    len(text),
                    self.max_chars,
                    extra={"original_chars": len(text), "max_chars": self.max_chars},
                )
                self._bump("truncated")
                text = text[: self.max_chars]
            processed.append(text)
        return processed

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if texts is None or len(texts) == 0:
            LOGGER.debug("embed() called with no texts")
            return []
        processed = self.prepare_texts(list(texts))
        self._bump("calls")
        self._bump("texts", len(processed))
        vectors = self._embed_batch(processed)
        return self._check_vectors(vectors, expected=len(processed))

    def _check_vectors(self, vectors: Any, *, expected: int) -> List[List[float]]:
        try:
            arr = np.asarray(vectors, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise ProviderUnavailable(f"{self.backend_name} returned ragged or non-numeric vectors") from exc
        if arr.ndim != 2 or arr.shape[0] != expected or arr.shape[1] == 0:
            raise ProviderUnavailable(
                f"{self.backend_name} returned shape {tuple(arr.shape)} for {expected} texts"
            )
        if self.dim is not None and arr.shape[1] != self.dim:
            raise ProviderUnavailable(
                f"{self.backend_name} returned dimension {arr.shape[1]}, expected {self.dim}"
            )
        if self.normalize:
            arr = np.vstack([_l2_normalize(row) for row in arr])
        return arr.astype(np.float32).tolist()

    # ------------------------------------------------------------------
    # Abstract API
    # ------------------------------------------------------------------
    def _embed_batch(self, texts: List[str]) -> Any:
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - hook for specialised backends
        return None


class SentenceTransformerProvider(EmbeddingProvider):
    """Local SentenceTransformer model."""

    backend_name = "sentence-transformers"

    def __init__(self, cfg: "EmbeddingConfig", model: Any = None):
        super().__init__(
            model_name=cfg.model_name, max_chars=cfg.max_chars, dim=cfg.dim, normalize=cfg.normalize
        )
        if model is None:
            if SentenceTransformer is None:  # pragma: no cover - runtime guard
                raise ImportError(
                    "Please install sentence-transformers to use the local embedding backend."
                )
            model = SentenceTransformer(cfg.model_name, device=_detect_device())
        self.model = model
        self.batch_size = int(cfg.batch_size or 32)

    def _embed_batch(self, texts: List[str]) -> Any:
        try:
            embs = self.model.encode(
                texts,
                batch_size=self.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.normalize,
            )
        except Exception as exc:  # noqa: BLE001 - any model failure means no vectors
            raise ProviderUnavailable(f"Local embedding model failed: {exc}") from exc
        return np.asarray(embs, dtype=np.float32)


class _HTTPEmbeddingProvider(EmbeddingProvider):
    def __init__(self, cfg: "EmbeddingConfig", *, token: Optional[str], session: Optional[requests.Session] = None):
        super().__init__(
            model_name=cfg.model_name, max_chars=cfg.max_chars, dim=cfg.dim, normalize=cfg.normalize
        )
        self.timeout = float(cfg.timeout)
        self.token = token
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post_json(self, url: str, payload: dict) -> Any:
        try:
            resp = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise ProviderUnavailable(f"{self.backend_name} request failed: {exc}") from exc
        if resp.status_code >= 400:
            body = (resp.text or "")[:500]
            LOGGER.error(
                "%s request failed with status %s: %s", self.backend_name, resp.status_code, body
            )
            raise ProviderUnavailable(f"{self.backend_name} request failed with status {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"{self.backend_name} returned a non-JSON body") from exc

    def close(self) -> None:
        self.session.close()


def _pool_feature_output(output: Any) -> List[float]:
    """Reduce a feature-extraction payload to one sentence vector.

    The hosted pipeline returns either a flat vector or token-level vectors
    (optionally wrapped in a batch dimension); token-level output is mean-pooled.
    """

    arr = np.asarray(output, dtype=np.float32)
    while arr.ndim > 2 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim == 2:
        arr = arr.mean(axis=0)
    if arr.ndim != 1:
        raise ValueError(f"unexpected feature-extraction shape {arr.shape}")
    return arr.tolist()


class HFInferenceProvider(_HTTPEmbeddingProvider):
    """Hosted Hugging Face feature-extraction model, one request per text."""

    backend_name = "hf-inference"

    def __init__(self, cfg: "EmbeddingConfig", session: Optional[requests.Session] = None):
        token = cfg.hf_token or os.getenv("HF_TOKEN")
        if not token:
            raise ValueError("hf-inference backend requires HF_TOKEN.")
        super().__init__(cfg, token=token, session=session)
        base = (cfg.hf_base_url or "").rstrip("/")
        self.url = f"{base}/{cfg.model_name}/pipeline/feature-extraction"

    def _embed_batch(self, texts: List[str]) -> Any:
        vectors = []
        for text in texts:
            output = self._post_json(self.url, {"inputs": text})
            try:
                vectors.append(_pool_feature_output(output))
            except (TypeError, ValueError) as exc:
                raise ProviderUnavailable(f"hf-inference returned an unexpected payload: {exc}") from exc
        return vectors


class EndpointProvider(_HTTPEmbeddingProvider):
    """Custom deployed prediction endpoint."""

    backend_name = "endpoint"

    def __init__(self, cfg: "EmbeddingConfig", session: Optional[requests.Session] = None):
        if not cfg.endpoint_url:
            raise ValueError("endpoint backend requires EMBEDDING_ENDPOINT_URL.")
        super().__init__(cfg, token=cfg.endpoint_token or os.getenv("EMBEDDING_ENDPOINT_TOKEN"), session=session)
        self.url = cfg.endpoint_url

    def _embed_batch(self, texts: List[str]) -> Any:
        data = self._post_json(self.url, {"instances": [{"inputs": t} for t in texts]})
        predictions = data.get("predictions") if isinstance(data, dict) else None
        if not isinstance(predictions, list) or len(predictions) != len(texts):
            raise ProviderUnavailable("endpoint response does not contain one prediction per text")
        vectors = []
        for pred in predictions:
            # Each prediction wraps the sentence vector one level deep.
            if isinstance(pred, list) and pred and isinstance(pred[0], list):
                vectors.append(pred[0])
            else:
                vectors.append(pred)
        return vectors


class AzureOpenAIEmbeddingProvider(EmbeddingProvider):
    """Azure OpenAI embeddings deployment."""

    backend_name = "azure-openai"

    def __init__(self, cfg: "EmbeddingConfig", client: Any = None):
        super().__init__(
            model_name=cfg.azure_deployment or cfg.model_name,
            max_chars=cfg.max_chars,
            dim=cfg.dim,
            normalize=cfg.normalize,
        )
        if client is None:
            if AzureOpenAI is None:  # pragma: no cover - runtime guard
                raise ImportError("Please install openai>=1.0 to use the Azure backend.")
            api_key = cfg.azure_api_key or os.getenv("AZURE_OPENAI_API_KEY")
            endpoint = cfg.azure_endpoint or os.getenv("AZURE_OPENAI_ENDPOINT")
            if not api_key or not endpoint:
                raise ValueError("Azure backend requires AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT.")
            client = AzureOpenAI(
                api_key=api_key,
                api_version=cfg.azure_api_version,
                azure_endpoint=endpoint,
                timeout=cfg.timeout,
                max_retries=0,
            )
        self.client = client

    def _embed_batch(self, texts: List[str]) -> Any:
        try:
            resp = self.client.embeddings.create(model=self.model_name, input=list(texts))
        except Exception as exc:  # noqa: BLE001 - SDK raises many transport/auth types
            raise ProviderUnavailable(f"Azure OpenAI embeddings call failed: {exc}") from exc
        items = sorted(resp.data, key=lambda item: getattr(item, "index", 0))
        return [list(item.embedding) for item in items]


def build_embedding_provider(cfg: "EmbeddingConfig") -> EmbeddingProvider:
    """Factory helper that instantiates the configured backend."""

    backend_name = (cfg.backend or "hf-inference").lower()
    if backend_name in {"sentence-transformers", "sentence_transformers", "local"}:
        return SentenceTransformerProvider(cfg)
    if backend_name in {"hf-inference", "huggingface", "hf"}:
        return HFInferenceProvider(cfg)
    if backend_name in {"endpoint", "vertex"}:
        return EndpointProvider(cfg)
    if backend_name in {"azure-openai", "azure"}:
        return AzureOpenAIEmbeddingProvider(cfg)
    if backend_name == "hashing":
        from ..testing.hashing_embedder import make_hashing_provider

        return make_hashing_provider(cfg)
    raise ValueError(f"Unsupported embedding backend: {cfg.backend}")


__all__ = [
    "AzureOpenAIEmbeddingProvider",
    "EmbeddingProvider",
    "EndpointProvider",
    "HFInferenceProvider",
    "SentenceTransformerProvider",
    "build_embedding_provider",
]
