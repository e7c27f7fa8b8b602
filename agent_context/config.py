"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    AgentConfig,
    AgentContextConfig,
    AssemblerConfig,
    BranchConfig,
    ConfigError,
    EmbeddingConfig,
    MemoryConfig,
    RetrievalWeights,
    StorageConfig,
    SummarizationConfig,
)

CONFIG_FILENAMES = [
    "agent-context.yaml",
    "agent-context.yml",
    "agent-context.json",
]

EMBEDDING_PROVIDERS = ("sentence-transformers", "openai", "none")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _build_config(raw: dict[str, Any]) -> AgentContextConfig:
    """Build an AgentContextConfig from a raw dict."""
    storage_raw = _section(raw, "storage")
    storage = StorageConfig(
        sqlite_path=storage_raw.get("sqlite_path", StorageConfig.sqlite_path),
    )

    emb_raw = _section(raw, "embeddings")
    embeddings = EmbeddingConfig(
        provider=emb_raw.get("provider", EmbeddingConfig.provider),
        model=emb_raw.get("model", EmbeddingConfig.model),
        base_url=emb_raw.get("base_url", EmbeddingConfig.base_url),
        api_key_env=emb_raw.get("api_key_env", EmbeddingConfig.api_key_env),
    )

    mem_raw = _section(raw, "memory")
    memory = MemoryConfig(
        recency_decay_rate=mem_raw.get("recency_decay_rate", MemoryConfig.recency_decay_rate),
        candidate_multiplier=mem_raw.get("candidate_multiplier", MemoryConfig.candidate_multiplier),
        default_importance=mem_raw.get("default_importance", MemoryConfig.default_importance),
    )

    br_raw = _section(raw, "branches")
    branches = BranchConfig(
        inactive_threshold_hours=br_raw.get("inactive_threshold_hours", BranchConfig.inactive_threshold_hours),
        note_max_age_hours=br_raw.get("note_max_age_hours", BranchConfig.note_max_age_hours),
    )

    asm_raw = _section(raw, "assembly")
    defaults = AssemblerConfig()
    weights_raw = asm_raw.get("memory_weights") or {}
    try:
        weights = RetrievalWeights(
            recency=weights_raw.get("recency", defaults.memory_weights.recency),
            importance=weights_raw.get("importance", defaults.memory_weights.importance),
            relevance=weights_raw.get("relevance", defaults.memory_weights.relevance),
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e
    assembler = AssemblerConfig(
        max_context_tokens=asm_raw.get("max_context_tokens", defaults.max_context_tokens),
        reserved_for_response=asm_raw.get("reserved_for_response", defaults.reserved_for_response),
        switchboard_budget=asm_raw.get("switchboard_budget", defaults.switchboard_budget),
        min_conversation_budget=asm_raw.get("min_conversation_budget", defaults.min_conversation_budget),
        memory_max_tokens=asm_raw.get("memory_max_tokens", defaults.memory_max_tokens),
        memory_budget_fraction=asm_raw.get("memory_budget_fraction", defaults.memory_budget_fraction),
        memory_limit=asm_raw.get("memory_limit", defaults.memory_limit),
        memory_min_score=asm_raw.get("memory_min_score", defaults.memory_min_score),
        memory_weights=weights,
        memory_query_max_chars=asm_raw.get("memory_query_max_chars", defaults.memory_query_max_chars),
        memory_query_messages=asm_raw.get("memory_query_messages", defaults.memory_query_messages),
        history_fetch_limit=asm_raw.get("history_fetch_limit", defaults.history_fetch_limit),
        identity_files=asm_raw.get("identity_files", []),
        identity_text=asm_raw.get("identity_text", ""),
    )

    summ_raw = _section(raw, "summarization")
    summarization = SummarizationConfig(
        provider=summ_raw.get("provider", ""),
        model=summ_raw.get("model", ""),
        max_tokens=summ_raw.get("max_tokens", SummarizationConfig.max_tokens),
        temperature=summ_raw.get("temperature", SummarizationConfig.temperature),
        keep_recent_messages=summ_raw.get("keep_recent_messages", SummarizationConfig.keep_recent_messages),
        trigger_ratio=summ_raw.get("trigger_ratio", SummarizationConfig.trigger_ratio),
        max_transcript_chars=summ_raw.get("max_transcript_chars", SummarizationConfig.max_transcript_chars),
    )

    agent_raw = _section(raw, "agent")
    agent_defaults = AgentConfig()
    agent = AgentConfig(
        name=agent_raw.get("name", agent_defaults.name),
        first_contact_instruction=agent_raw.get(
            "first_contact_instruction", agent_defaults.first_contact_instruction,
        ),
        switchboard_triggers=agent_raw.get("switchboard_triggers", agent_defaults.switchboard_triggers),
    )

    return AgentContextConfig(
        version=str(raw.get("version", "1")),
        token_counter=raw.get("token_counter", "estimate"),
        storage=storage,
        embeddings=embeddings,
        memory=memory,
        branches=branches,
        assembler=assembler,
        summarization=summarization,
        agent=agent,
        providers=_section(raw, "providers"),
    )


def validate_config(config: AgentContextConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    asm = config.assembler

    if asm.reserved_for_response < 0:
        errors.append("reserved_for_response must be >= 0")

    if asm.budget_tokens <= 0:
        errors.append(
            f"max_context_tokens ({asm.max_context_tokens}) must exceed "
            f"reserved_for_response ({asm.reserved_for_response})"
        )

    if asm.min_conversation_budget > asm.budget_tokens:
        errors.append(
            f"min_conversation_budget ({asm.min_conversation_budget}) exceeds "
            f"the context budget ({asm.budget_tokens})"
        )

    if not 0 < asm.memory_budget_fraction <= 1:
        errors.append("memory_budget_fraction must be in (0, 1]")

    if asm.memory_limit < 1:
        errors.append("memory_limit must be >= 1")

    if not 0 <= asm.memory_min_score <= 1:
        errors.append("memory_min_score must be in [0, 1]")

    if config.memory.recency_decay_rate < 0:
        errors.append("recency_decay_rate must be >= 0")

    if config.memory.candidate_multiplier < 1:
        errors.append("candidate_multiplier must be >= 1")

    if config.branches.inactive_threshold_hours <= 0:
        errors.append("inactive_threshold_hours must be > 0")

    if config.embeddings.provider not in EMBEDDING_PROVIDERS:
        errors.append(
            f"Unknown embedding provider '{config.embeddings.provider}' "
            f"(expected one of {', '.join(EMBEDDING_PROVIDERS)})"
        )

    if not 0 < config.summarization.trigger_ratio <= 1:
        errors.append("summarization trigger_ratio must be in (0, 1]")

    # Check that summarization provider exists in providers
    if config.summarization.provider and config.summarization.provider not in config.providers:
        errors.append(
            f"Summarization provider '{config.summarization.provider}' "
            f"not found in providers section"
        )

    if (
        config.token_counter not in ("estimate", "tiktoken")
        and not config.token_counter.startswith("callable:")
    ):
        errors.append(f"Unknown token_counter mode: {config.token_counter}")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> AgentContextConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    return _build_config(raw)
