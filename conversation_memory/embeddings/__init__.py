"""
Embedding provider abstraction and implementations.

Provides:
- Abstract EmbeddingProvider interface
- OpenAI implementation
- LRU cache for query embeddings
- Retry with backoff and a circuit breaker
"""

from .base import EmbeddingProvider
from .cache import EmbeddingCache
from .openai import OpenAIEmbeddings
from .resilience import CircuitBreaker, CircuitOpenError, RetryConfig, retry_with_backoff

__all__ = [
    "EmbeddingProvider",
    "EmbeddingCache",
    "OpenAIEmbeddings",
    "CircuitBreaker",
    "CircuitOpenError",
    "RetryConfig",
    "retry_with_backoff",
]
