from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .structured_logging import StructuredLogger


@dataclass
class ServerContext:
    """Process-wide shared utilities: the structured logger plus static labels."""

    logger: StructuredLogger
    labels: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def default(service_name: str = "ledgersync", *, instance_id: str | None = None) -> "ServerContext":
        base_context: dict[str, Any] = {"service": service_name}
        if instance_id:
            base_context["instance"] = instance_id
        return ServerContext(
            logger=StructuredLogger(name=service_name, base_context=base_context),
            labels=dict(base_context),
        )
