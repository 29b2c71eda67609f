"""Key-value backed caches: semantic answer cache and usage ledger."""

from .semantic import SemanticCache, SemanticCacheConfig, cosine_similarity
from .store import create_redis
from .usage import UsageLedger

__all__ = ["SemanticCache", "SemanticCacheConfig", "UsageLedger", "cosine_similarity", "create_redis"]
