"""Common utilities and types for infrastructure reconciliation."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Shown in place of sensitive values in plans, outputs and logs
SENSITIVE_PLACEHOLDER = '(sensitive value)'


@dataclass
class OperationResult:
    """Result returned by a single provider operation."""
    success: bool
    message: str = ''
    duration: float = 0.0
    attributes: Optional[dict] = None
    partial: bool = False


@dataclass
class OperationRecord:
    """Per-operation execution record.

    Attributes:
        address: Resource instance address
        action: Operation kind (create, update, delete)
        status: pending, running, completed, failed, skipped
        duration: Seconds spent in the provider call
        error: Error message if failed or reason if skipped
    """
    address: str
    action: str
    status: str = 'pending'
    duration: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        if self.error is not None:
            d['error'] = self.error
        return d


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically (sorted keys, compact)."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), default=str)


def redact(value: Any, sensitive: bool) -> Any:
    """Replace a value with the sensitive placeholder when flagged."""
    return SENSITIVE_PLACEHOLDER if sensitive else value
