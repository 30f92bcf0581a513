"""Structured, redacted diagnostics for the sign-in flow.

A DiagnosticsRecorder is passed explicitly to the components that
report into it; there is no process-wide recorder.
"""

from __future__ import annotations

import json
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pkce_auth.errors import ErrorKind, PKCEAuthError
from pkce_auth.logging_config import get_logger
from pkce_auth.security import redact_details

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = get_logger(__name__)

DEFAULT_MAX_EVENTS = 1000


@dataclass(frozen=True)
class DiagnosticEvent:
    """One recorded phase outcome."""

    phase: str
    success: bool
    duration_ms: float | None = None
    error_kind: ErrorKind | None = None
    provider: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    reference_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        data["timestamp"] = self.timestamp.isoformat()
        return data


class _Timer:
    """Mutable handle yielded by DiagnosticsRecorder.timed."""

    def __init__(self) -> None:
        self.details: dict[str, Any] = {}
        self.success = True
        self.error_kind: ErrorKind | None = None

    def fail(self, error_kind: ErrorKind | None = None, **details: Any) -> None:
        self.success = False
        self.error_kind = error_kind
        self.details.update(details)


class DiagnosticsRecorder:
    """Append-only, bounded log of sign-in phase outcomes.

    Every detail is redacted before it is stored. Recording never
    raises: a broken recorder must not break sign-in.
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        self._events: deque[DiagnosticEvent] = deque(maxlen=max_events)

    def append(
        self,
        phase: str,
        success: bool,
        *,
        duration_ms: float | None = None,
        error_kind: ErrorKind | None = None,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
        reference_id: str | None = None,
    ) -> DiagnosticEvent | None:
        """Record one phase outcome.

        Returns:
            The stored event, or None if recording failed
        """
        try:
            event = DiagnosticEvent(
                phase=phase,
                success=success,
                duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
                error_kind=error_kind,
                provider=provider,
                details=redact_details(details or {}),
                reference_id=reference_id,
            )
            self._events.append(event)
        except Exception as e:
            logger.warning("Failed to record diagnostics for phase %s: %s", phase, e)
            return None

        logger.debug(
            "Diagnostics: %s %s%s",
            phase,
            "succeeded" if success else "failed",
            f" ({error_kind.value})" if error_kind else "",
        )
        return event

    @contextmanager
    def timed(
        self,
        phase: str,
        provider: str | None = None,
        reference_id: str | None = None,
        **details: Any,
    ) -> Iterator[_Timer]:
        """Time a block and record its outcome.

        The block may call ``timer.fail(kind)`` to record a failure
        without raising. Exceptions are recorded and re-raised.
        """
        timer = _Timer()
        timer.details.update(details)
        start = time.perf_counter()
        try:
            yield timer
        except Exception as e:
            kind = e.kind if isinstance(e, PKCEAuthError) else None
            timer.fail(kind, error=type(e).__name__)
            raise
        finally:
            self.append(
                phase,
                timer.success,
                duration_ms=(time.perf_counter() - start) * 1000,
                error_kind=timer.error_kind,
                provider=provider,
                details=timer.details,
                reference_id=reference_id,
            )

    def events(self, phase: str | None = None) -> list[DiagnosticEvent]:
        """Recorded events, optionally for one phase."""
        if phase is None:
            return list(self._events)
        return [event for event in self._events if event.phase == phase]

    def failures(self) -> list[DiagnosticEvent]:
        """Recorded failed events."""
        return [event for event in self._events if not event.success]

    def clear(self) -> None:
        """Drop every recorded event."""
        self._events.clear()

    def report(self) -> dict[str, Any]:
        """Aggregate counts per phase and outcome."""
        phases: dict[str, dict[str, int]] = {}
        error_kinds: dict[str, int] = {}
        total_duration = 0.0

        for event in self._events:
            counts = phases.setdefault(event.phase, {"succeeded": 0, "failed": 0})
            counts["succeeded" if event.success else "failed"] += 1
            if event.error_kind is not None:
                key = event.error_kind.value
                error_kinds[key] = error_kinds.get(key, 0) + 1
            total_duration += event.duration_ms or 0.0

        succeeded = sum(counts["succeeded"] for counts in phases.values())
        last_event = self._events[-1] if self._events else None

        return {
            "total_events": len(self._events),
            "succeeded": succeeded,
            "failed": len(self._events) - succeeded,
            "total_duration_ms": round(total_duration, 3),
            "phases": phases,
            "error_kinds": error_kinds,
            "last_event_at": last_event.timestamp.isoformat() if last_event else None,
        }

    def export_json(self) -> str:
        """Report plus every event as JSON."""
        return json.dumps(
            {
                "report": self.report(),
                "events": [event.to_dict() for event in self._events],
            },
            indent=2,
            default=str,
        )
