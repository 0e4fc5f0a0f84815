"""Configuration dataclasses for the similar-case retrieval subsystem."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .core.index import IndexConfig

DEFAULT_HF_MODEL = "pritamdeka/BioBERT-mnli-snli-scinli-scitail-mednli-stsb"


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EmbeddingConfig:
    backend: str = field(default_factory=lambda: os.getenv("EMBEDDING_BACKEND", "hf-inference"))
    model_name: str = field(default_factory=lambda: os.getenv("EMBEDDING_MODEL_NAME", DEFAULT_HF_MODEL))
    # ~286 characters stays under ~100 tokens for the BioBERT reference model.
    max_chars: int = field(default_factory=lambda: _env_int("EMBEDDING_MAX_CHARS", 286))
    dim: Optional[int] = field(default_factory=lambda: _env_int("EMBEDDING_DIM"))
    normalize: bool = True
    batch_size: int = field(default_factory=lambda: _env_int("EMB_BATCH", 32))
    timeout: float = field(default_factory=lambda: _env_float("EMBEDDING_TIMEOUT", 30.0))
    retry_max: int = 3
    retry_backoff: float = 0.5
    # Hosted Hugging Face feature extraction
    hf_token: Optional[str] = field(default_factory=lambda: os.getenv("HF_TOKEN"))
    hf_base_url: str = field(
        default_factory=lambda: os.getenv(
            "HF_INFERENCE_BASE_URL", "https://router.huggingface.co/hf-inference/models"
        )
    )
    # Custom deployed prediction endpoint
    endpoint_url: Optional[str] = field(default_factory=lambda: os.getenv("EMBEDDING_ENDPOINT_URL"))
    endpoint_token: Optional[str] = field(default_factory=lambda: os.getenv("EMBEDDING_ENDPOINT_TOKEN"))
    # Azure OpenAI specific knobs
    azure_api_key: Optional[str] = field(default_factory=lambda: os.getenv("AZURE_OPENAI_API_KEY"))
    azure_api_version: str = field(
        default_factory=lambda: os.getenv("AZURE_OPENAI_API_VERSION", "2024-06-01")
    )
    azure_endpoint: Optional[str] = field(default_factory=lambda: os.getenv("AZURE_OPENAI_ENDPOINT"))
    azure_deployment: Optional[str] = field(
        default_factory=lambda: os.getenv("AZURE_OPENAI_EMBEDDING_DEPLOYMENT")
    )


@dataclass
class SearchConfig:
    num_candidates: int = field(default_factory=lambda: _env_int("SIMILAR_CASES_NUM_CANDIDATES", 150))
    limit: int = field(default_factory=lambda: _env_int("SIMILAR_CASES_LIMIT", 10))


@dataclass
class CacheConfig:
    backend: str = field(default_factory=lambda: os.getenv("SIMILAR_CASES_CACHE_BACKEND", "sqlite"))
    path: Optional[str] = field(default_factory=lambda: os.getenv("SIMILAR_CASES_CACHE_PATH"))
    ttl_ms: int = field(
        default_factory=lambda: _env_int("SIMILAR_CASES_CACHE_TTL_MS", 24 * 60 * 60 * 1000)
    )
    timeout: float = 5.0
    memory_maxsize: int = 10000


@dataclass
class Paths:
    workdir: str
    index_dir_override: str | None = None
    index_dir: str = field(init=False)

    def __post_init__(self):
        work_path = Path(self.workdir)
        work_path.mkdir(parents=True, exist_ok=True)
        if self.index_dir_override:
            index_path = Path(self.index_dir_override)
        else:
            index_path = work_path / "index"
        index_path.mkdir(parents=True, exist_ok=True)
        self.index_dir = str(index_path)

    @property
    def cache_path(self) -> str:
        return str(Path(self.workdir) / "similar_cases_cache.sqlite")


@dataclass
class RetrievalConfig:
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    operation: str = "similar-cases"
    coalesce_identical: bool = field(
        default_factory=lambda: _env_bool("SIMILAR_CASES_COALESCE", True)
    )


def apply_overrides(target: object, overrides: Mapping[str, Any]) -> None:
    """Recursively apply a JSON-style mapping onto (nested) config dataclasses."""

    if isinstance(target, dict):
        for key, value in overrides.items():
            if isinstance(value, Mapping):
                current = target.get(key)
                if isinstance(current, Mapping):
                    nested = dict(current)
                    apply_overrides(nested, value)
                    target[key] = nested
                else:
                    target[key] = dict(value)
            else:
                target[key] = value
        return

    for key, value in overrides.items():
        if not hasattr(target, key):
            raise ValueError(f"Unknown configuration key: {key}")
        if isinstance(value, Mapping):
            current = getattr(target, key, None)
            if current is not None and not isinstance(current, (str, bytes, int, float, bool)):
                apply_overrides(current, value)
            else:
                setattr(target, key, dict(value))
        else:
            setattr(target, key, value)


__all__ = [
    "CacheConfig",
    "EmbeddingConfig",
    "IndexConfig",
    "Paths",
    "RetrievalConfig",
    "SearchConfig",
    "apply_overrides",
]
