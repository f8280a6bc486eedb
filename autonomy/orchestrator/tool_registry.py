"""Tool registry: the closed allowlist of actions the job runner may execute.

A job's ``type`` is looked up here and nowhere else.  There is no dynamic
dispatch: a type with no registered executor is refused by the runner.
Adding a capability means adding an entry to ``autonomy.tools.default_tools``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from autonomy.domain.models import Job

logger = logging.getLogger(__name__)

Executor = Callable[[Job], None]


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Executor] = {}

    def register(self, name: str, executor: Executor) -> None:
        """Add a tool.  Raises ``ValueError`` if *name* is already taken."""
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = executor
        logger.debug("Registered tool %s", name)

    def get(self, name: str) -> Executor | None:
        """Return the executor for *name*, or ``None`` if it is not allowlisted."""
        return self._tools.get(name)

    def list(self) -> list[str]:
        """Registered tool names, in registration order."""
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def build_registry(tools: Iterable[tuple[str, Executor]]) -> ToolRegistry:
    """Populate a fresh registry from ``(name, executor)`` pairs, in order."""
    registry = ToolRegistry()
    for name, executor in tools:
        registry.register(name, executor)
    logger.info("Tool registry ready: %s", ", ".join(registry.list()) or "(empty)")
    return registry
