# Fire-and-forget notification surface (toasts, alerts, push). Not required for correctness:
# a failing notifier is logged and never fails the operation that triggered it.
from __future__ import annotations

import logging
from typing import Any, Dict, List, Protocol, Tuple

logger = logging.getLogger("lodgely.notify")


class Notifier(Protocol):
    def notify(self, recipient_id: int, kind: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records the notification in the service log."""

    def notify(self, recipient_id: int, kind: str, payload: Dict[str, Any]) -> None:
        logger.info(kind, extra={"recipient_id": recipient_id, "payload": payload})


class RecordingNotifier:
    """Keeps notifications in memory; handy for tests and local tooling."""

    def __init__(self) -> None:
        self.sent: List[Tuple[int, str, Dict[str, Any]]] = []

    def notify(self, recipient_id: int, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((recipient_id, kind, payload))

    def kinds_for(self, recipient_id: int) -> List[str]:
        return [kind for rid, kind, _ in self.sent if rid == recipient_id]


def notify_safely(notifier: Notifier, recipient_id: int, kind: str, **payload: Any) -> None:
    try:
        notifier.notify(recipient_id, kind, payload)
    except Exception as exc:
        logger.warning("notify.failed", extra={"recipient_id": recipient_id, "kind": kind, "error": repr(exc)})
