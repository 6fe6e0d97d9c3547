from __future__ import annotations

from pathlib import Path

import pytest

from graphkeeper.config import (
    ChatModelConfig,
    ProviderConfig,
    Settings,
    SettingsStore,
    load_settings,
    validate_settings,
)
from graphkeeper.errors import ValidationError


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.server_port == 9621
    assert settings.base_url == "http://localhost:9621"
    assert settings.lightrag_command == "lightrag-server"
    assert settings.enable_auto_start_server is False
    assert settings.title_prefix_extensions == (".md",)
    assert settings.work_dir_path() is None


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("GRAPHKEEPER_PORT", "9700")
    monkeypatch.setenv("GRAPHKEEPER_AUTO_START", "yes")
    monkeypatch.setenv("GRAPHKEEPER_WORK_DIR", "/srv/rag")
    monkeypatch.setenv("GRAPHKEEPER_SHOW_CITATIONS", "false")

    settings = Settings.from_env()

    assert settings.server_port == 9700
    assert settings.enable_auto_start_server is True
    assert settings.lightrag_work_dir == "/srv/rag"
    assert settings.lightrag_show_citations is False


def test_settings_from_env_falls_back_on_unparseable_values(monkeypatch) -> None:
    monkeypatch.setenv("GRAPHKEEPER_AUTO_START", "sometimes")
    monkeypatch.setenv("GRAPHKEEPER_SHOW_CITATIONS", "maybe")
    monkeypatch.setenv("GRAPHKEEPER_PORT", "ninety")

    settings = Settings.from_env()

    assert settings.enable_auto_start_server is False
    assert settings.lightrag_show_citations is True
    assert settings.server_port == 9621


def test_from_mapping_keeps_base_for_unparseable_values() -> None:
    base = Settings(server_port=9000)

    settings = Settings.from_mapping(
        {
            "server_port": "not-a-port",
            "enable_auto_start_server": "on",
            "title_prefix_extensions": ["MD", "txt", ""],
            "providers": [{"id": "openai", "api_key": "sk"}, "garbage"],
            "unknown_key": 42,
        },
        base=base,
    )

    assert settings.server_port == 9000
    assert settings.enable_auto_start_server is True
    assert settings.title_prefix_extensions == (".md", ".txt")
    assert settings.providers == (ProviderConfig(id="openai", api_key="sk"),)


def test_llm_model_id_falls_back_to_chat_model() -> None:
    settings = Settings(chat_model_id="chat", lightrag_model_id="  ")
    assert settings.llm_model_id == "chat"
    assert settings.with_updates(lightrag_model_id="rag").llm_model_id == "rag"


def test_with_updates_rejects_unknown_fields() -> None:
    with pytest.raises(TypeError):
        Settings().with_updates(not_a_setting=True)


def test_load_settings_overlays_yaml(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("GRAPHKEEPER_PORT", raising=False)
    config = tmp_path / "graphkeeper.yaml"
    config.write_text(
        "server_port: 9800\n"
        "providers:\n"
        "  - id: ollama\n"
        "    base_url: http://localhost:11434\n"
        "chat_models:\n"
        "  - id: local\n"
        "    provider_id: ollama\n"
        "    model: qwen2.5\n"
        "chat_model_id: local\n",
        encoding="utf-8",
    )

    settings = load_settings(config)

    assert settings.server_port == 9800
    assert settings.chat_model("local") == ChatModelConfig(id="local", provider_id="ollama", model="qwen2.5")


def test_load_settings_missing_file_uses_environment(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.yaml")
    assert isinstance(settings, Settings)


def test_validate_settings_reports_every_issue() -> None:
    settings = Settings(
        server_port=70000,
        providers=(ProviderConfig(id="openai"), ProviderConfig(id="openai")),
        chat_models=(ChatModelConfig(id="chat", provider_id="nowhere", model="m"),),
    )

    issues = validate_settings(settings)

    assert any("server_port" in issue for issue in issues)
    assert any("more than once" in issue for issue in issues)
    assert any("unknown provider 'nowhere'" in issue for issue in issues)


def test_settings_store_notifies_listeners_and_unsubscribes() -> None:
    store = SettingsStore(Settings())
    seen: list[int] = []
    unsubscribe = store.add_listener(lambda snapshot: seen.append(snapshot.server_port))

    store.replace(Settings(server_port=9001))
    unsubscribe()
    store.replace(Settings(server_port=9002))

    assert seen == [9001]
    assert store.current.server_port == 9002


def test_settings_store_keeps_previous_snapshot_on_invalid_update() -> None:
    original = Settings(server_port=9001)
    store = SettingsStore(original)

    with pytest.raises(ValidationError) as excinfo:
        store.replace(Settings(server_port=0))

    assert store.current is original
    assert excinfo.value.issues
