"""Tests for configuration loading and validation."""

import json

import pytest
import yaml

from agent_context.config import load_config, validate_config
from agent_context.types import ConfigError


class TestLoadConfig:
    def test_load_defaults(self):
        config = load_config(config_dict={})
        assert config.version == "1"
        assert config.token_counter == "estimate"
        assert config.storage.sqlite_path == ".agentcontext/brain.db"
        assert config.assembler.max_context_tokens == 8000
        assert config.assembler.reserved_for_response == 2000
        assert config.assembler.budget_tokens == 6000
        assert config.assembler.memory_weights.relevance == 2.0
        assert config.memory.recency_decay_rate == 0.025
        assert config.branches.inactive_threshold_hours == 4.0
        assert config.summarization.provider == ""
        assert config.agent.name == "Agent"

    def test_load_from_dict(self):
        config = load_config(config_dict={
            "storage": {"sqlite_path": "/tmp/x.db"},
            "assembly": {
                "max_context_tokens": 16000,
                "memory_weights": {"importance": 0.5},
                "identity_text": "You are Nova.",
            },
            "memory": {"candidate_multiplier": 3},
            "agent": {"name": "Nova", "switchboard_triggers": ["anyone else"]},
        })
        assert config.storage.sqlite_path == "/tmp/x.db"
        assert config.assembler.budget_tokens == 14000
        assert config.assembler.memory_weights.importance == 0.5
        assert config.assembler.memory_weights.recency == 1.0
        assert config.assembler.identity_text == "You are Nova."
        assert config.memory.candidate_multiplier == 3
        assert config.agent.name == "Nova"
        assert config.agent.switchboard_triggers == ["anyone else"]

    def test_load_from_yaml_file(self, tmp_path):
        path = tmp_path / "agent-context.yaml"
        path.write_text(yaml.dump({
            "summarization": {"provider": "ollama", "keep_recent_messages": 6},
            "providers": {"ollama": {"type": "generic_openai", "model": "qwen3:4b"}},
        }))
        config = load_config(config_path=path)
        assert config.summarization.provider == "ollama"
        assert config.summarization.keep_recent_messages == 6
        assert config.providers["ollama"]["model"] == "qwen3:4b"

    def test_load_from_json_file(self, tmp_path):
        path = tmp_path / "agent-context.json"
        path.write_text(json.dumps({"embeddings": {"provider": "none"}}))
        assert load_config(config_path=path).embeddings.provider == "none"

    def test_discovers_config_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "agent-context.yml").write_text("agent:\n  name: Found\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().agent.name == "Found"

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "missing.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "agent-context.yaml"
        path.write_text("assembly: [unclosed")
        with pytest.raises(ConfigError, match="Cannot parse"):
            load_config(config_path=path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "agent-context.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=path)

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError, match="'assembly'"):
            load_config(config_dict={"assembly": "big"})

    def test_negative_weight_is_config_error(self):
        with pytest.raises(ConfigError):
            load_config(config_dict={"assembly": {"memory_weights": {"recency": -1}}})


class TestValidateConfig:
    def test_valid_default_config(self):
        assert validate_config(load_config(config_dict={})) == []

    def test_budget_must_be_positive(self):
        config = load_config(config_dict={"assembly": {"max_context_tokens": 1000, "reserved_for_response": 1000}})
        errors = validate_config(config)
        assert any("must exceed" in e for e in errors)

    def test_min_conversation_over_budget(self):
        config = load_config(config_dict={"assembly": {"max_context_tokens": 3000}})
        assert any("min_conversation_budget" in e for e in validate_config(config))

    def test_fraction_and_scores(self):
        config = load_config(config_dict={"assembly": {"memory_budget_fraction": 0, "memory_min_score": 2}})
        errors = validate_config(config)
        assert any("memory_budget_fraction" in e for e in errors)
        assert any("memory_min_score" in e for e in errors)

    def test_unknown_embedding_provider(self):
        config = load_config(config_dict={"embeddings": {"provider": "word2vec"}})
        assert any("word2vec" in e for e in validate_config(config))

    def test_summarization_provider_must_exist(self):
        config = load_config(config_dict={"summarization": {"provider": "ollama"}})
        assert any("not found in providers" in e for e in validate_config(config))

    def test_unknown_token_counter(self):
        config = load_config(config_dict={"token_counter": "words"})
        assert any("token_counter" in e for e in validate_config(config))

    def test_inactive_threshold(self):
        config = load_config(config_dict={"branches": {"inactive_threshold_hours": 0}})
        assert any("inactive_threshold_hours" in e for e in validate_config(config))
