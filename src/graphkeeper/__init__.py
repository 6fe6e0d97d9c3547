"""Graphkeeper application package."""

from __future__ import annotations

from .config import Settings
from .env_file import generate_env
from .supervisor import ProcessSupervisor

__all__ = [
    "Settings",
    "generate_env",
    "ProcessSupervisor",
    "GraphKeeper",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "GraphKeeper":
        from .runtime import GraphKeeper

        return GraphKeeper
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'graphkeeper' has no attribute {name}")
