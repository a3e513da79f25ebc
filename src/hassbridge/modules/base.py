"""Abstract base class for bridge modules."""

from __future__ import annotations

import abc
from pathlib import Path
from typing import Any

from pydantic import BaseModel


class Module(abc.ABC):
    """Abstract base class for bridge modules.

    Every pluggable module must subclass Module and implement all abstract
    members. Modules add domain-specific MCP tools to the bridge and own
    their background work between ``on_startup`` and ``on_shutdown``.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Unique module name (e.g., 'home_assistant')."""
        ...

    @property
    @abc.abstractmethod
    def config_schema(self) -> type[BaseModel]:
        """Pydantic model class for this module's configuration."""
        ...

    @abc.abstractmethod
    async def register_tools(self, mcp: Any) -> None:
        """Register MCP tools on the bridge's FastMCP server."""
        ...

    @abc.abstractmethod
    async def on_startup(self, config: Any, state_dir: Path) -> None:
        """Called once the bridge configuration has been loaded.

        Parameters
        ----------
        config:
            Module-specific configuration (validated model or raw dict).
        state_dir:
            Host state directory. Modules keep their durable files in a
            ``plugins/<module>`` subdirectory of it.
        """
        ...

    @abc.abstractmethod
    async def on_shutdown(self) -> None:
        """Called during bridge shutdown. Must be idempotent."""
        ...
