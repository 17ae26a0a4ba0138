"""Logger and metrics handles threaded through component constructors."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from sentinel_bridge.metrics import PipelineMetrics


@dataclass(slots=True)
class PipelineContext:
    logger: Any = field(default_factory=lambda: structlog.get_logger("sentinel_bridge"))
    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)

    def bind(self, component: str, **values: Any) -> Any:
        """Return a logger bound to a component name."""
        return self.logger.bind(component=component, **values)
