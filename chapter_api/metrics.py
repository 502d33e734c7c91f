"""
Prometheus Metrics Module

Exposes metrics for monitoring the meeting runner.

Metrics:
- Counters: commands by outcome, phase transitions, validator verdicts
- Histograms: turn duration and overtime per phase

Usage:
    from chapter_api.metrics import metrics

    metrics.record_command("advance", "ok")
    metrics.record_turn(phase="lightning_round", duration=58, overtime=0)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class MeetingMetrics:
    """Prometheus collectors for the meeting runner."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.commands = Counter(
            "meeting_commands_total",
            "Meeting runner commands by outcome",
            ["command", "outcome"],
            registry=self.registry,
        )
        self.phase_transitions = Counter(
            "meeting_phase_transitions_total",
            "Phase transitions",
            ["from_phase", "to_phase"],
            registry=self.registry,
        )
        self.verdicts = Counter(
            "meeting_completion_verdicts_total",
            "Completion validator verdicts",
            ["status", "changed"],
            registry=self.registry,
        )
        self.turn_duration = Histogram(
            "meeting_turn_duration_seconds",
            "Speaking time per turn",
            ["phase"],
            buckets=(15, 30, 60, 90, 120, 300, 600, 900, 1200),
            registry=self.registry,
        )
        self.turn_overtime = Histogram(
            "meeting_turn_overtime_seconds",
            "Overtime per turn",
            ["phase"],
            buckets=(0, 10, 30, 60, 120, 300, 600),
            registry=self.registry,
        )

    def record_command(self, command: str, outcome: str) -> None:
        self.commands.labels(command=command, outcome=outcome).inc()

    def record_transition(self, from_phase: str, to_phase: str) -> None:
        self.phase_transitions.labels(from_phase=from_phase, to_phase=to_phase).inc()

    def record_verdict(self, status: str, changed: bool) -> None:
        self.verdicts.labels(status=status, changed=str(changed).lower()).inc()

    def record_turn(self, phase: str, duration: int | None, overtime: int | None) -> None:
        if duration is None:
            return
        self.turn_duration.labels(phase=phase).observe(duration)
        self.turn_overtime.labels(phase=phase).observe(overtime or 0)

    def render(self) -> tuple[bytes, str]:
        """Exposition payload and content type for the /metrics endpoint."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


# Global metrics instance
metrics = MeetingMetrics()
