"""Render the backend's ``.env`` file from a settings snapshot."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

from .config import ProviderConfig, Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_FILENAME: Final[str] = ".env"
_HEADER: Final[str] = "# Generated by graphkeeper"
_LISTEN_HOST: Final[str] = "0.0.0.0"
_DEFAULT_EMBEDDING_DIM: Final[int] = 1024
_MAX_TOKEN_SIZE: Final[int] = 8192

# Bindings the backend understands. Anything else is skipped silently.
SUPPORTED_BINDINGS: Final[frozenset[str]] = frozenset(
    {"openai", "ollama", "gemini", "anthropic", "azure_openai", "lollms"}
)

_API_KEY_NAMES: Final[dict[str, str]] = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure_openai": "AZURE_OPENAI_API_KEY",
}


def _host_override(provider: ProviderConfig) -> str | None:
    base_url = provider.base_url
    if not base_url:
        return None
    if provider.id == "ollama":
        return f"OLLAMA_HOST={base_url}"
    if provider.id == "openai" and "localhost" in base_url:
        return f"OPENAI_BASE_URL={base_url}"
    return None


def generate_env(settings: Settings) -> str:
    """Return the ``.env`` text for *settings*.

    Total and deterministic: missing optional values are omitted rather than
    reported.
    """

    lines = [
        _HEADER,
        f"WORKING_DIR={settings.lightrag_work_dir}",
        f"HOST={_LISTEN_HOST}",
        f"PORT={settings.server_port}",
        f"SUMMARY_LANGUAGE={settings.lightrag_summary_language or 'English'}",
    ]

    llm_model = settings.chat_model(settings.llm_model_id)
    llm_provider = settings.provider(llm_model.provider_id) if llm_model else None
    if llm_provider is not None and llm_provider.id not in SUPPORTED_BINDINGS:
        llm_provider = None

    embedding_model = settings.embedding_model(settings.embedding_model_id)
    embedding_provider = settings.provider(embedding_model.provider_id) if embedding_model else None
    if embedding_provider is not None and embedding_provider.id not in SUPPORTED_BINDINGS:
        embedding_provider = None

    if llm_model is not None and llm_provider is not None:
        lines.append("")
        lines.append(f"# LLM Configuration ({llm_provider.id})")
        lines.append(f"LLM_BINDING={llm_provider.id}")
        lines.append(f"LLM_MODEL={llm_model.model}")
        override = _host_override(llm_provider)
        if override:
            lines.append(override)

    if embedding_model is not None and embedding_provider is not None:
        lines.append("")
        lines.append(f"# Embedding Configuration ({embedding_provider.id})")
        lines.append(f"EMBEDDING_BINDING={embedding_provider.id}")
        lines.append(f"EMBEDDING_MODEL={embedding_model.model}")
        lines.append(f"EMBEDDING_DIM={embedding_model.dimension or _DEFAULT_EMBEDDING_DIM}")
        lines.append(f"MAX_TOKEN_SIZE={_MAX_TOKEN_SIZE}")

    lines.append("")
    lines.append("# API Keys")
    seen: set[str] = set()
    for provider in (llm_provider, embedding_provider):
        if provider is None or provider.id in seen:
            continue
        seen.add(provider.id)
        key_name = _API_KEY_NAMES.get(provider.id)
        if key_name and provider.api_key:
            lines.append(f"{key_name}={provider.api_key}")

    return "\n".join(lines) + "\n"


def env_file_path(settings: Settings) -> Path:
    work_dir = settings.work_dir_path()
    if work_dir is None:
        raise ConfigurationError("Configure the backend working directory first.")
    return work_dir / ENV_FILENAME


def write_env_file(settings: Settings) -> Path:
    """Write ``<work_dir>/.env`` (overwriting) and return its path."""

    path = env_file_path(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_env(settings), encoding="utf-8")
    logger.info("env_file.written path=%s", path)
    return path


__all__ = ["SUPPORTED_BINDINGS", "ENV_FILENAME", "generate_env", "env_file_path", "write_env_file"]
