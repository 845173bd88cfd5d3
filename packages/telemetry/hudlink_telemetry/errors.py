"""Telemetry error taxonomy."""

from __future__ import annotations


class TelemetryError(Exception):
    pass


class SamplerUnavailable(TelemetryError):
    """The counter-sampling facility could not start; CPU metrics stay disabled."""


class InsufficientSamples(TelemetryError):
    """Fewer than two raw samples are retained, so no differential metric exists yet."""


class ExternalQueryFailure(TelemetryError):
    def __init__(self, query: str, reason: str) -> None:
        super().__init__(f"{query}: {reason}")
        self.query = query
        self.reason = reason
