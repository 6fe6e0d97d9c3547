"""Configuration helpers for graphkeeper.

Settings are an immutable snapshot. Scalar values come from ``GRAPHKEEPER_*``
environment variables; provider and model catalogues come from a YAML file
(see :func:`load_settings`). A :class:`SettingsStore` swaps snapshots wholesale
and tells registered listeners about the replacement.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Final, Iterable, Mapping

import yaml
from dotenv import load_dotenv

from .errors import ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

_DEFAULT_COMMAND: Final[str] = "lightrag-server"
_DEFAULT_SUMMARY_LANGUAGE: Final[str] = "English"
_DEFAULT_HOST: Final[str] = "localhost"
_DEFAULT_PORT: Final[int] = 9621
_DEFAULT_DOCUMENT_ROOT: Final[str] = "."
_DEFAULT_TITLE_PREFIX_EXTENSIONS: Final[tuple[str, ...]] = (".md",)
_DEFAULT_METRICS_NAMESPACE: Final[str] = "graphkeeper"
_CONFIG_FILE_ENV: Final[str] = "GRAPHKEEPER_CONFIG_FILE"


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    logger.warning("settings.env_invalid name=%s expected=boolean; using default", name)
    return None


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("settings.env_invalid name=%s expected=integer; using default", name)
        return None


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_str(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, (str, int, float)):
        return str(value)
    return default


def _normalize_extensions(values: Iterable[Any]) -> tuple[str, ...]:
    normalized: list[str] = []
    for value in values:
        text = str(value).strip().lower()
        if not text:
            continue
        if not text.startswith("."):
            text = f".{text}"
        if text not in normalized:
            normalized.append(text)
    return tuple(normalized)


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Credentials and endpoint for a model provider."""

    id: str
    base_url: str = ""
    api_key: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        return cls(
            id=_coerce_str(data.get("id"), "").strip(),
            base_url=_coerce_str(data.get("base_url"), "").strip(),
            api_key=_coerce_str(data.get("api_key"), "").strip(),
        )


@dataclass(slots=True, frozen=True)
class ChatModelConfig:
    id: str
    provider_id: str
    model: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ChatModelConfig":
        return cls(
            id=_coerce_str(data.get("id"), "").strip(),
            provider_id=_coerce_str(data.get("provider_id"), "").strip(),
            model=_coerce_str(data.get("model"), "").strip(),
        )


@dataclass(slots=True, frozen=True)
class EmbeddingModelConfig:
    id: str
    provider_id: str
    model: str
    dimension: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EmbeddingModelConfig":
        raw_dimension = data.get("dimension")
        dimension = None if raw_dimension is None else _coerce_int(raw_dimension, 0) or None
        return cls(
            id=_coerce_str(data.get("id"), "").strip(),
            provider_id=_coerce_str(data.get("provider_id"), "").strip(),
            model=_coerce_str(data.get("model"), "").strip(),
            dimension=dimension,
        )


@dataclass(slots=True, frozen=True)
class Settings:
    """Immutable runtime settings snapshot."""

    providers: tuple[ProviderConfig, ...] = ()
    chat_models: tuple[ChatModelConfig, ...] = ()
    embedding_models: tuple[EmbeddingModelConfig, ...] = ()
    chat_model_id: str = ""
    embedding_model_id: str = ""
    enable_auto_start_server: bool = False
    lightrag_command: str = _DEFAULT_COMMAND
    lightrag_work_dir: str = ""
    lightrag_model_id: str | None = None
    lightrag_summary_language: str = _DEFAULT_SUMMARY_LANGUAGE
    lightrag_show_citations: bool = True
    server_host: str = _DEFAULT_HOST
    server_port: int = _DEFAULT_PORT
    document_root: str = _DEFAULT_DOCUMENT_ROOT
    title_prefix_extensions: tuple[str, ...] = field(
        default=_DEFAULT_TITLE_PREFIX_EXTENSIONS
    )
    metrics_enabled: bool = True
    metrics_namespace: str = _DEFAULT_METRICS_NAMESPACE
    prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            chat_model_id=os.getenv("GRAPHKEEPER_CHAT_MODEL_ID", ""),
            embedding_model_id=os.getenv("GRAPHKEEPER_EMBEDDING_MODEL_ID", ""),
            enable_auto_start_server=_env_bool("GRAPHKEEPER_AUTO_START", False),
            lightrag_command=os.getenv("GRAPHKEEPER_COMMAND", _DEFAULT_COMMAND),
            lightrag_work_dir=os.getenv("GRAPHKEEPER_WORK_DIR", ""),
            lightrag_model_id=os.getenv("GRAPHKEEPER_MODEL_ID") or None,
            lightrag_summary_language=os.getenv(
                "GRAPHKEEPER_SUMMARY_LANGUAGE", _DEFAULT_SUMMARY_LANGUAGE
            ),
            lightrag_show_citations=_env_bool("GRAPHKEEPER_SHOW_CITATIONS", True),
            server_host=os.getenv("GRAPHKEEPER_HOST", _DEFAULT_HOST),
            server_port=_env_optional_int("GRAPHKEEPER_PORT") or _DEFAULT_PORT,
            document_root=os.getenv("GRAPHKEEPER_DOCUMENT_ROOT", _DEFAULT_DOCUMENT_ROOT),
            metrics_enabled=_env_bool("GRAPHKEEPER_METRICS_ENABLED", True),
            metrics_namespace=os.getenv("GRAPHKEEPER_METRICS_NAMESPACE", _DEFAULT_METRICS_NAMESPACE),
            prometheus_enabled=_env_bool("GRAPHKEEPER_PROMETHEUS_ENABLED", False),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base: "Settings | None" = None) -> "Settings":
        """Overlay a parsed mapping (YAML/JSON) on *base*.

        Unknown keys are ignored and values that cannot be coerced keep the
        base value, so a partially broken file still yields a usable snapshot.
        """

        base = base or cls()
        changes: dict[str, Any] = {}

        if isinstance(data.get("providers"), list):
            changes["providers"] = tuple(
                ProviderConfig.from_mapping(item) for item in data["providers"] if isinstance(item, Mapping)
            )
        if isinstance(data.get("chat_models"), list):
            changes["chat_models"] = tuple(
                ChatModelConfig.from_mapping(item) for item in data["chat_models"] if isinstance(item, Mapping)
            )
        if isinstance(data.get("embedding_models"), list):
            changes["embedding_models"] = tuple(
                EmbeddingModelConfig.from_mapping(item)
                for item in data["embedding_models"]
                if isinstance(item, Mapping)
            )
        if isinstance(data.get("title_prefix_extensions"), list):
            changes["title_prefix_extensions"] = _normalize_extensions(data["title_prefix_extensions"])

        for name in (
            "chat_model_id",
            "embedding_model_id",
            "lightrag_command",
            "lightrag_work_dir",
            "lightrag_summary_language",
            "server_host",
            "document_root",
            "metrics_namespace",
        ):
            if name in data:
                changes[name] = _coerce_str(data[name], getattr(base, name))
        for name in (
            "enable_auto_start_server",
            "lightrag_show_citations",
            "metrics_enabled",
            "prometheus_enabled",
        ):
            if name in data:
                changes[name] = _coerce_bool(data[name], getattr(base, name))
        if "server_port" in data:
            changes["server_port"] = _coerce_int(data["server_port"], base.server_port)
        if "lightrag_model_id" in data:
            raw = data["lightrag_model_id"]
            changes["lightrag_model_id"] = _coerce_str(raw, "") or None

        return replace(base, **changes)

    def with_updates(self, **changes: Any) -> "Settings":
        """Return a new snapshot with *changes* applied."""

        known = {item.name for item in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    @property
    def base_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}"

    @property
    def llm_model_id(self) -> str:
        """Dedicated LLM override when present, else the general chat model."""

        override = (self.lightrag_model_id or "").strip()
        return override or self.chat_model_id

    def provider(self, provider_id: str | None) -> ProviderConfig | None:
        if not provider_id:
            return None
        return next((item for item in self.providers if item.id == provider_id), None)

    def chat_model(self, model_id: str | None) -> ChatModelConfig | None:
        if not model_id:
            return None
        return next((item for item in self.chat_models if item.id == model_id), None)

    def embedding_model(self, model_id: str | None) -> EmbeddingModelConfig | None:
        if not model_id:
            return None
        return next((item for item in self.embedding_models if item.id == model_id), None)

    def work_dir_path(self) -> Path | None:
        if not self.lightrag_work_dir.strip():
            return None
        return Path(self.lightrag_work_dir).expanduser()

    def document_root_path(self) -> Path:
        return Path(self.document_root or _DEFAULT_DOCUMENT_ROOT).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.metrics_enabled,
            namespace=self.metrics_namespace,
            prometheus_enabled=self.prometheus_enabled,
        )


def load_settings(config_file: str | os.PathLike[str] | None = None) -> Settings:
    """Load settings from the environment, then overlay a YAML file if present."""

    settings = Settings.from_env()
    if config_file is None:
        config_file = os.getenv(_CONFIG_FILE_ENV)
    if not config_file:
        return settings

    path = Path(config_file).expanduser()
    if not path.exists():
        logger.warning("settings.file_missing path=%s; using environment only", path)
        return settings

    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if not data:
        return settings
    if not isinstance(data, Mapping):
        logger.warning("settings.file_ignored path=%s reason=not-a-mapping", path)
        return settings
    return Settings.from_mapping(data, base=settings)


def validate_settings(settings: Settings) -> list[str]:
    """Return human-readable violations; an empty list means the snapshot is valid."""

    issues: list[str] = []
    if not (1 <= settings.server_port <= 65535):
        issues.append(f"server_port must be between 1 and 65535 (got {settings.server_port})")
    if not settings.server_host.strip():
        issues.append("server_host must not be empty")
    if not settings.lightrag_command.strip():
        issues.append("lightrag_command must not be empty")

    provider_ids = [provider.id for provider in settings.providers]
    if any(not provider_id for provider_id in provider_ids):
        issues.append("every provider needs an id")
    duplicates = sorted({pid for pid in provider_ids if pid and provider_ids.count(pid) > 1})
    for provider_id in duplicates:
        issues.append(f"provider '{provider_id}' is defined more than once")

    known_providers = set(provider_ids)
    for chat_model in settings.chat_models:
        if not chat_model.id or not chat_model.model:
            issues.append("every chat model needs an id and a model name")
        elif chat_model.provider_id not in known_providers:
            issues.append(
                f"chat model '{chat_model.id}' references unknown provider '{chat_model.provider_id}'"
            )
    for embedding_model in settings.embedding_models:
        if not embedding_model.id or not embedding_model.model:
            issues.append("every embedding model needs an id and a model name")
        elif embedding_model.provider_id not in known_providers:
            issues.append(
                f"embedding model '{embedding_model.id}' references unknown provider "
                f"'{embedding_model.provider_id}'"
            )
        if embedding_model.dimension is not None and embedding_model.dimension <= 0:
            issues.append(f"embedding model '{embedding_model.id}' must have a positive dimension")
    return issues


SettingsListener = Callable[[Settings], None]


class SettingsStore:
    """Hold the current settings snapshot and notify listeners on replacement."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._listeners: list[SettingsListener] = []
        self._lock = threading.Lock()

    @property
    def current(self) -> Settings:
        return self._settings

    def replace(self, settings: Settings) -> Settings:
        """Swap in *settings* after validation.

        Raises :class:`ValidationError` and keeps the previous snapshot when
        the new one is invalid.
        """

        issues = validate_settings(settings)
        if issues:
            raise ValidationError(issues)
        with self._lock:
            self._settings = settings
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(settings)
            except Exception:  # pragma: no cover - listener bugs must not block others
                logger.exception("settings.listener_failed listener=%r", listener)
        return settings

    def add_listener(self, listener: SettingsListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unregisters it."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe


__all__ = [
    "ProviderConfig",
    "ChatModelConfig",
    "EmbeddingModelConfig",
    "Settings",
    "SettingsStore",
    "load_settings",
    "validate_settings",
]
