"""Tests for service configuration."""

import pytest

from soulycore.server.config import (
    DatabaseConfig,
    EmbeddingConfig,
    GenerationConfig,
    SoulyCoreConfig,
    TierConfig,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "OPENAI_API_KEY",
        "SOULYCORE_GENERATION_API_BASE",
        "SOULYCORE_EMBEDDING_API_BASE",
        "SOULYCORE_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:

    def test_default_sections(self):
        config = SoulyCoreConfig()

        assert config.instance_id == "default"
        assert config.generation.provider == "openai"
        assert config.generation.max_retries == 3
        assert config.generation.retry_initial_delay == 2.0
        assert config.embedding.provider == "hash"
        assert config.embedding.dimensions == 768
        assert config.context.episodic_depth == 8
        assert config.context.semantic_top_k == 3
        assert config.extraction.extract_relationships is False
        assert config.agent.max_steps_per_phase == 10
        assert config.server.port == 18791
        assert config.tiers.as_dict() == {
            "episodic": "sqlite",
            "semantic": "memory",
            "structured": "sqlite",
            "graph": "sqlite",
            "document": "sqlite",
            "working": "memory",
        }

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert GenerationConfig().api_key == "sk-env"
        assert EmbeddingConfig().api_key == "sk-env"

    def test_api_base_from_env(self, monkeypatch):
        monkeypatch.setenv("SOULYCORE_GENERATION_API_BASE", "http://localhost:11434/v1")
        assert GenerationConfig().api_base == "http://localhost:11434/v1"


class TestSectionValidation:

    def test_invalid_generation_provider(self):
        with pytest.raises(ValueError, match="Invalid generation provider"):
            GenerationConfig(provider="carrier-pigeon")

    def test_invalid_embedding_provider(self):
        with pytest.raises(ValueError, match="Invalid embedding provider"):
            EmbeddingConfig(provider="magic")

    def test_invalid_tier_adapter(self):
        with pytest.raises(ValueError, match="semantic tier"):
            TierConfig(semantic="postgres")

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            GenerationConfig(max_retries=-1)


class TestDatabaseConfig:

    def test_in_memory(self):
        db = DatabaseConfig(path=":memory:")
        assert db.in_memory
        assert db.sqlite_path("episodic") == ":memory:"

    def test_file_paths(self, tmp_path):
        db = DatabaseConfig(path=str(tmp_path))
        assert db.sqlite_path("episodic") == str(tmp_path / "episodic.db")


class TestLoading:

    def test_from_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "instance_id: laptop\n"
            "generation:\n"
            "  provider: openai\n"
            "  model: llama3.1\n"
            "  api_base: http://localhost:11434/v1\n"
            "tiers:\n"
            "  semantic: lancedb\n"
            "context:\n"
            "  episodic_depth: 4\n"
        )

        config = SoulyCoreConfig.from_file(path)

        assert config.instance_id == "laptop"
        assert config.generation.model == "llama3.1"
        assert config.tiers.semantic == "lancedb"
        assert config.context.episodic_depth == 4
        assert config.embedding.provider == "hash"

    def test_missing_file_gives_defaults(self, tmp_path):
        config = SoulyCoreConfig.from_file(tmp_path / "nope.yaml")
        assert config.instance_id == "default"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert SoulyCoreConfig.from_file(path).server.port == 18791

    def test_from_env_reads_config_path(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("instance_id: from-env\n")
        monkeypatch.setenv("SOULYCORE_CONFIG", str(path))

        assert SoulyCoreConfig.from_env().instance_id == "from-env"

    def test_from_dict_invalid_section_value(self):
        with pytest.raises(ValueError):
            SoulyCoreConfig.from_dict({"context": {"episodic_depth": 0}})


class TestValidate:

    def test_openai_without_key(self):
        errors = SoulyCoreConfig().validate()
        assert errors == ["generation.api_key is required (or set OPENAI_API_KEY)"]

    def test_local_endpoint_needs_no_key(self):
        config = SoulyCoreConfig(
            generation=GenerationConfig(api_base="http://localhost:11434/v1")
        )
        assert config.validate() == []

    def test_lancedb_needs_disk(self):
        config = SoulyCoreConfig(
            generation=GenerationConfig(provider="mock"),
            db=DatabaseConfig(path=":memory:"),
            tiers=TierConfig(semantic="lancedb"),
        )
        assert any("lancedb" in e for e in config.validate())

    def test_valid_with_key(self):
        config = SoulyCoreConfig(generation=GenerationConfig(api_key="sk-test"))
        assert config.validate() == []
