"""
Bias-severity scaling strategies.

A scale maps (observed, required) to a Severity, where ``observed`` falls short
of ``required`` (e.g. sample size 12 against a minimum of 30). The exact model
is a configuration choice; BandedSeverity is the default.
"""

from dataclasses import dataclass
from typing import Protocol

from clinical_digest.models import Severity


class SeverityScale(Protocol):
    def __call__(self, observed: float, required: float) -> Severity: ...


@dataclass(frozen=True)
class BandedSeverity:
    """Severity from the observed/required ratio.

    ratio < high_below   → high
    ratio < medium_below → medium
    otherwise            → low
    """
    high_below: float = 0.5
    medium_below: float = 0.8

    def __call__(self, observed: float, required: float) -> Severity:
        if required <= 0:
            return Severity.LOW
        ratio = max(observed, 0.0) / required
        if ratio < self.high_below:
            return Severity.HIGH
        if ratio < self.medium_below:
            return Severity.MEDIUM
        return Severity.LOW


@dataclass(frozen=True)
class ShortfallSeverity:
    """Severity from the absolute shortfall (required - observed)."""
    high_at: float = 15
    medium_at: float = 5

    def __call__(self, observed: float, required: float) -> Severity:
        shortfall = required - observed
        if shortfall >= self.high_at:
            return Severity.HIGH
        if shortfall >= self.medium_at:
            return Severity.MEDIUM
        return Severity.LOW
