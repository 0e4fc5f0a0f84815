"""Test utilities for similar-case retrieval."""

from .hashing_embedder import HashingEmbeddingProvider, make_hashing_provider

__all__ = ["HashingEmbeddingProvider", "make_hashing_provider"]
