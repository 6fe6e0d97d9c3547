from __future__ import annotations

from pathlib import Path

import pytest

from graphkeeper.config import ChatModelConfig, EmbeddingModelConfig, ProviderConfig, Settings
from graphkeeper.env_file import env_file_path, generate_env, write_env_file
from graphkeeper.errors import ConfigurationError


def test_generate_env_renders_sections_in_order(settings: Settings) -> None:
    text = generate_env(settings)
    lines = text.splitlines()

    assert lines[0] == "# Generated by graphkeeper"
    assert lines[1] == f"WORKING_DIR={settings.lightrag_work_dir}"
    assert lines[2] == "HOST=0.0.0.0"
    assert lines[3] == "PORT=9621"
    assert lines[4] == "SUMMARY_LANGUAGE=English"
    assert "# LLM Configuration (openai)" in lines
    assert "LLM_BINDING=openai" in lines
    assert "LLM_MODEL=gpt-4o-mini" in lines
    assert "EMBEDDING_MODEL=text-embedding-3-small" in lines
    assert "EMBEDDING_DIM=1536" in lines
    assert "MAX_TOKEN_SIZE=8192" in lines
    assert lines.index("# LLM Configuration (openai)") < lines.index("# Embedding Configuration (openai)")
    assert lines.index("# Embedding Configuration (openai)") < lines.index("# API Keys")
    assert text.endswith("\n")


def test_generate_env_writes_shared_api_key_once(settings: Settings) -> None:
    text = generate_env(settings)

    assert text.count("OPENAI_API_KEY=sk-test") == 1
    # Remote OpenAI endpoints need no base URL override.
    assert "OPENAI_BASE_URL" not in text


def test_generate_env_is_deterministic(settings: Settings) -> None:
    assert generate_env(settings) == generate_env(settings)


def test_generate_env_prefers_dedicated_llm_model(settings: Settings) -> None:
    custom = settings.with_updates(
        chat_models=settings.chat_models + (ChatModelConfig(id="local", provider_id="ollama", model="qwen2.5"),),
        lightrag_model_id="local",
    )

    text = generate_env(custom)

    assert "LLM_BINDING=ollama" in text
    assert "LLM_MODEL=qwen2.5" in text
    assert "OLLAMA_HOST=http://localhost:11434" in text


def test_generate_env_adds_base_url_for_local_openai_compatible_server() -> None:
    settings = Settings(
        providers=(ProviderConfig(id="openai", base_url="http://localhost:8000/v1", api_key="local"),),
        chat_models=(ChatModelConfig(id="chat", provider_id="openai", model="llama"),),
        chat_model_id="chat",
        lightrag_work_dir="/srv/rag",
    )

    assert "OPENAI_BASE_URL=http://localhost:8000/v1" in generate_env(settings)


def test_generate_env_omits_unsupported_and_missing_sections() -> None:
    settings = Settings(
        providers=(ProviderConfig(id="deepseek", api_key="ds-key"),),
        chat_models=(ChatModelConfig(id="chat", provider_id="deepseek", model="deepseek-chat"),),
        embedding_models=(EmbeddingModelConfig(id="e", provider_id="missing", model="m"),),
        chat_model_id="chat",
        embedding_model_id="e",
        lightrag_work_dir="/srv/rag",
    )

    text = generate_env(settings)

    assert "LLM_BINDING" not in text
    assert "EMBEDDING_BINDING" not in text
    assert "ds-key" not in text
    assert text.rstrip("\n").endswith("# API Keys")


def test_generate_env_defaults_embedding_dimension() -> None:
    settings = Settings(
        providers=(ProviderConfig(id="ollama", base_url="http://localhost:11434"),),
        embedding_models=(EmbeddingModelConfig(id="bge", provider_id="ollama", model="bge-m3"),),
        embedding_model_id="bge",
        lightrag_work_dir="/srv/rag",
    )

    assert "EMBEDDING_DIM=1024" in generate_env(settings)


def test_write_env_file_creates_work_dir(settings: Settings) -> None:
    path = write_env_file(settings)

    assert path == Path(settings.lightrag_work_dir) / ".env"
    assert path.read_text(encoding="utf-8") == generate_env(settings)


def test_env_file_path_requires_work_dir() -> None:
    with pytest.raises(ConfigurationError):
        env_file_path(Settings())


def test_changing_embedding_dimension_changes_only_that_line(settings: Settings) -> None:
    resized = settings.with_updates(
        embedding_models=(
            EmbeddingModelConfig(id="embed", provider_id="openai", model="text-embedding-3-small", dimension=768),
        )
    )

    before = generate_env(settings).splitlines()
    after = generate_env(resized).splitlines()

    assert len(before) == len(after)
    changed = [(old, new) for old, new in zip(before, after) if old != new]
    assert changed == [("EMBEDDING_DIM=1536", "EMBEDDING_DIM=768")]
