"""Memory tiers and the configuration-driven tier registry."""

import logging
from pathlib import Path
from typing import Iterator, Optional

from ...interfaces import IEmbeddingService, IMemoryTier, TierError
from ..background import BackgroundTaskSupervisor
from .document import DocumentMemoryTier
from .episodic import EpisodicMemoryTier, SUMMARY_WORD_THRESHOLD, Summarizer
from .graph import GraphMemoryTier
from .semantic import InMemoryVectorIndex, LanceDBVectorIndex, SemanticMemoryTier, VectorIndex
from .structured import StructuredMemoryTier
from .working import WorkingMemoryTier

logger = logging.getLogger(__name__)

TIER_NAMES = ("episodic", "semantic", "structured", "graph", "document", "working")


class TierRegistry:
    """Maps tier names to adapters.

    Pipelines look tiers up by name and never inspect adapter types.
    """

    def __init__(self, tiers: Optional[dict[str, IMemoryTier]] = None):
        self._tiers: dict[str, IMemoryTier] = {}
        for name, tier in (tiers or {}).items():
            self.register(name, tier)

    def register(self, name: str, tier: IMemoryTier) -> None:
        if name not in TIER_NAMES:
            raise TierError(f"Unknown tier name: {name!r}")
        self._tiers[name] = tier

    def get(self, name: str) -> Optional[IMemoryTier]:
        return self._tiers.get(name)

    def require(self, name: str) -> IMemoryTier:
        tier = self._tiers.get(name)
        if tier is None:
            raise TierError(f"Tier not configured: {name}")
        return tier

    def __contains__(self, name: str) -> bool:
        return name in self._tiers

    def __iter__(self) -> Iterator[str]:
        return iter(self._tiers)

    @property
    def episodic(self) -> EpisodicMemoryTier:
        return self.require("episodic")

    def close_all(self) -> None:
        for name, tier in self._tiers.items():
            try:
                tier.close()
            except Exception as e:
                logger.warning("Failed to close %s tier: %s", name, e)


def build_tier_registry(
    tier_adapters: dict[str, str],
    db,
    embedding_service: IEmbeddingService,
    background: BackgroundTaskSupervisor,
    summarizer: Optional[Summarizer] = None,
) -> TierRegistry:
    """Construct every tier from an adapter map.

    Args:
        tier_adapters: Tier name → adapter name (see ``TierConfig``).
        db: ``DatabaseConfig`` giving SQLite paths and LanceDB location.
        embedding_service: Embedder for the semantic tier.
        background: Supervisor for episodic summarization.
        summarizer: Optional long-turn summarizer.
    """
    registry = TierRegistry()
    for name, adapter in tier_adapters.items():
        if name == "episodic" and adapter == "sqlite":
            tier = EpisodicMemoryTier(
                db.sqlite_path("episodic"), background=background, summarizer=summarizer
            )
        elif name == "semantic" and adapter == "memory":
            tier = SemanticMemoryTier(embedding_service, InMemoryVectorIndex())
        elif name == "semantic" and adapter == "lancedb":
            index = LanceDBVectorIndex(
                dimensions=embedding_service.dimensions,
                db_path=None if db.in_memory else Path(db.path) / "lancedb",
                db_uri=db.lancedb_uri,
            )
            tier = SemanticMemoryTier(embedding_service, index)
        elif name == "structured" and adapter == "sqlite":
            tier = StructuredMemoryTier(db.sqlite_path("structured"))
        elif name == "graph" and adapter == "sqlite":
            tier = GraphMemoryTier(db.sqlite_path("graph"))
        elif name == "document" and adapter == "sqlite":
            tier = DocumentMemoryTier(db.sqlite_path("document"))
        elif name == "working" and adapter == "memory":
            tier = WorkingMemoryTier()
        else:
            raise TierError(f"No adapter {adapter!r} for tier {name!r}")
        registry.register(name, tier)
        logger.debug("Tier %s -> %s", name, type(tier).__name__)
    return registry


__all__ = [
    "TIER_NAMES",
    "SUMMARY_WORD_THRESHOLD",
    "TierRegistry",
    "build_tier_registry",
    "DocumentMemoryTier",
    "EpisodicMemoryTier",
    "GraphMemoryTier",
    "InMemoryVectorIndex",
    "LanceDBVectorIndex",
    "SemanticMemoryTier",
    "StructuredMemoryTier",
    "VectorIndex",
    "WorkingMemoryTier",
]
