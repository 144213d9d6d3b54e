"""Service configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

MEMORY_PATH = ":memory:"

TIER_ADAPTERS: dict[str, tuple[str, ...]] = {
    "episodic": ("sqlite",),
    "semantic": ("memory", "lancedb"),
    "structured": ("sqlite",),
    "graph": ("sqlite",),
    "document": ("sqlite",),
    "working": ("memory",),
}


@dataclass
class GenerationConfig:
    """Generative service configuration.

    Any OpenAI-compatible chat-completions endpoint works:
        provider: openai
        model: gpt-4o-mini
        api_base: http://localhost:11434/v1   # Ollama, no key needed
    """
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_initial_delay: float = 2.0

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.environ.get("OPENAI_API_KEY")
        if self.api_base is None:
            self.api_base = os.environ.get("SOULYCORE_GENERATION_API_BASE")
        if self.provider not in ("openai", "mock"):
            raise ValueError(
                f"Invalid generation provider: {self.provider}. "
                f"Valid options: 'openai', 'mock'"
            )
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_initial_delay < 0:
            raise ValueError("retry_initial_delay must be non-negative")


@dataclass
class EmbeddingConfig:
    """Embedding configuration.

    Default ``hash`` is a deterministic placeholder with no semantic value.
    """
    provider: str = "hash"
    model: Optional[str] = None
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    dimensions: int = 768

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.environ.get("OPENAI_API_KEY")
        if self.api_base is None:
            self.api_base = os.environ.get("SOULYCORE_EMBEDDING_API_BASE")
        if self.provider not in ("hash", "openai", "fastembed"):
            raise ValueError(
                f"Invalid embedding provider: {self.provider}. "
                f"Valid options: 'hash', 'openai', 'fastembed'"
            )
        if self.dimensions < 1:
            raise ValueError("dimensions must be >= 1")


@dataclass
class DatabaseConfig:
    """Where SQLite files and the LanceDB directory live."""
    path: str = "~/.soulycore/data"
    lancedb_uri: Optional[str] = None

    def __post_init__(self):
        if self.path != MEMORY_PATH:
            self.path = str(Path(self.path).expanduser())

    @property
    def in_memory(self) -> bool:
        return self.path == MEMORY_PATH

    def sqlite_path(self, name: str) -> str:
        if self.in_memory:
            return MEMORY_PATH
        return str(Path(self.path) / f"{name}.db")


@dataclass
class TierConfig:
    """Tier name → adapter selection."""
    episodic: str = "sqlite"
    semantic: str = "memory"
    structured: str = "sqlite"
    graph: str = "sqlite"
    document: str = "sqlite"
    working: str = "memory"

    def __post_init__(self):
        for tier, adapters in TIER_ADAPTERS.items():
            adapter = getattr(self, tier)
            if adapter not in adapters:
                raise ValueError(
                    f"Invalid adapter for {tier} tier: {adapter}. "
                    f"Valid options: {', '.join(adapters)}"
                )

    def as_dict(self) -> dict[str, str]:
        return {tier: getattr(self, tier) for tier in TIER_ADAPTERS}


@dataclass
class ContextConfig:
    """Context assembly depth and breadth."""
    episodic_depth: int = 8
    semantic_top_k: int = 3

    def __post_init__(self):
        if not 1 <= self.episodic_depth <= 50:
            raise ValueError("episodic_depth must be between 1 and 50")
        if self.semantic_top_k < 1:
            raise ValueError("semantic_top_k must be >= 1")


@dataclass
class ExtractionConfig:
    extract_entities: bool = True
    extract_knowledge: bool = True
    extract_relationships: bool = False


@dataclass
class AgentConfig:
    max_steps_per_phase: int = 10
    max_plan_phases: int = 8

    def __post_init__(self):
        if self.max_steps_per_phase < 1:
            raise ValueError("max_steps_per_phase must be >= 1")
        if self.max_plan_phases < 1:
            raise ValueError("max_plan_phases must be >= 1")


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "127.0.0.1"
    port: int = 18791


@dataclass
class SoulyCoreConfig:
    """Full service configuration."""
    instance_id: str = "default"
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    tiers: TierConfig = field(default_factory=TierConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "SoulyCoreConfig":
        """Load configuration from YAML file (defaults when missing)."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "SoulyCoreConfig":
        sections = {
            "generation": GenerationConfig,
            "embedding": EmbeddingConfig,
            "db": DatabaseConfig,
            "tiers": TierConfig,
            "context": ContextConfig,
            "extraction": ExtractionConfig,
            "agent": AgentConfig,
            "server": ServerConfig,
        }
        kwargs = {
            name: section_cls(**(data.get(name) or {}))
            for name, section_cls in sections.items()
        }
        return cls(instance_id=data.get("instance_id", "default"), **kwargs)

    @classmethod
    def from_env(cls) -> "SoulyCoreConfig":
        config_path = os.environ.get("SOULYCORE_CONFIG", "~/.soulycore/config.yaml")
        return cls.from_file(config_path)

    def validate(self) -> list[str]:
        """Validate cross-section settings, return list of errors."""
        errors = []

        if not self.instance_id:
            errors.append("instance_id is required")

        def needs_key(api_base: Optional[str]) -> bool:
            base = (api_base or "").strip()
            return base == "" or "api.openai.com" in base.lower()

        if self.generation.provider == "openai" and not self.generation.api_key:
            if needs_key(self.generation.api_base):
                errors.append("generation.api_key is required (or set OPENAI_API_KEY)")

        if self.embedding.provider == "openai" and not self.embedding.api_key:
            if needs_key(self.embedding.api_base):
                errors.append("embedding.api_key is required (or set OPENAI_API_KEY)")

        if self.tiers.semantic == "lancedb" and self.db.in_memory and not self.db.lancedb_uri:
            errors.append("tiers.semantic=lancedb needs a db.path on disk or db.lancedb_uri")

        return errors
