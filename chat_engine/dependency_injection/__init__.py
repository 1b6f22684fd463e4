"""Dependency injection container assembly utilities."""

from chat_engine.dependency_injection.container import build_container

__all__ = ["build_container"]
