from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict


def _json_dumps(data: Dict[str, Any]) -> str:
    try:
        return json.dumps(data, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        def _fallback(o: Any) -> str:
            try:
                return str(o)
            except Exception:  # noqa: BLE001
                return "<unserializable>"

        return json.dumps(data, separators=(",", ":"), default=_fallback)


@dataclass
class StructuredLogger:
    """Tiny structured logger that emits JSON lines via stdlib logging.

    Usage:
      logger = StructuredLogger(name="ledgersync", base_context={"service": "ledgersync"})
      logger.info("epoch_sync.step.complete", epoch=512, step="totals")
      job_logger = logger.with_context(job="epoch-analytics-sync")
      job_logger.error("epoch_sync.step.failed", detail="...")
    """

    name: str = "ledgersync"
    base_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(self.name)
        self._ensure_logger_configured()

    def _ensure_logger_configured(self) -> None:
        # Attach a stdout handler only when nothing upstream will print records.
        root_logger = logging.getLogger()
        if not root_logger.handlers:
            handler_attached = any(
                getattr(handler, "_structured_logger_handler", False)
                for handler in self._logger.handlers
            )
            if not handler_attached:
                handler = logging.StreamHandler(stream=sys.stdout)
                handler.setFormatter(logging.Formatter("%(message)s"))
                handler.setLevel(logging.INFO)
                setattr(handler, "_structured_logger_handler", True)
                self._logger.addHandler(handler)

        if self._logger.level == logging.NOTSET:
            self._logger.setLevel(logging.INFO)

        self._logger.propagate = True

    def with_context(self, **ctx: Any) -> "StructuredLogger":
        merged = {**self.base_context, **ctx}
        return StructuredLogger(name=self.name, base_context=merged)

    def _emit(self, level: int, event: str, **fields: Any) -> None:
        record = {
            "ts": time.time(),
            "event": event,
            **self.base_context,
            **fields,
        }
        self._logger.log(level, _json_dumps(record), extra={"event": event})

    def debug(self, event: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._emit(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._emit(logging.ERROR, event, **fields)
