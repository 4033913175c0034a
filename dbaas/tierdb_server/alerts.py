"""
Operator-facing alert channel.

Correctness-threatening conditions (checksum mismatch, conflicts that
persist after retry) are raised here instead of being swallowed.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .errors import TierDbError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    """A raised alert.

    Attributes:
        code: Error code of the condition
        message: Human-readable description
        details: Structured context
        raised_at: Unix seconds
    """

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: float = field(default_factory=time.time)

    @classmethod
    def from_error(cls, error: TierDbError, **context: Any) -> Alert:
        return cls(code=error.code, message=error.message, details={**error.details, **context})


class AlertChannel(ABC):
    """Destination for operator alerts."""

    @abstractmethod
    def raise_alert(self, alert: Alert) -> None:
        ...


class LoggingAlertChannel(AlertChannel):
    """Emits alerts as CRITICAL log records for the log pipeline to route."""

    def raise_alert(self, alert: Alert) -> None:
        logger.critical(
            alert.message,
            extra={"alert_code": alert.code, **{f"alert_{k}": v for k, v in alert.details.items()}},
        )


class InMemoryAlertChannel(AlertChannel):
    """Keeps alerts in a list (tests, local development)."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    def raise_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        logger.warning(alert.message, extra={"alert_code": alert.code})

    def codes(self) -> list[str]:
        return [a.code for a in self.alerts]
