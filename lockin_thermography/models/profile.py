"""Lock-in profile -- bundles every parameter of one measurement run.

A LockInProfile groups the run configuration into one frozen dataclass.
It can be:

- Overridden field-by-field via ``dataclasses.replace()``
- Serialized to/from a dict for JSON provenance
- Checked for settings that are valid but physically questionable
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class LockInProfile:
    """Frozen configuration for one lock-in measurement.

    Required fields
    ---------------
    frequency_hz : float
        Stimulus (and demodulation) frequency.
    duration_s : float
        Total measurement time in seconds.

    Optional fields (sensible defaults)
    ------------------------------------
    meta_rows : int
        Trailing camera rows that carry metadata instead of image data.
    duty_cycle : float
        Fraction of each period the stimulus is ON, strictly in (0, 1).
    settle_s : float or None
        Delay before the stimulus starts toggling.
    integration_s : float or None
        If set, frames are averaged over windows of this length before being
        fed to the accumulator.
    progress_interval_ms : int
        Period of progress reports.
    phase_bins : int
        Number of phase bins per stimulus cycle (36 = 10 degree bins).
    track_dc : bool
        Keep the per-pixel DC sum in the accumulator.
    """

    frequency_hz: float
    duration_s: float

    meta_rows: int = 0
    duty_cycle: float = 0.5
    settle_s: Optional[float] = None
    integration_s: Optional[float] = None
    progress_interval_ms: int = 100
    phase_bins: int = 36
    track_dc: bool = True

    # ------------------------------------------------------------------
    # Derived timing
    # ------------------------------------------------------------------

    @property
    def period_s(self) -> float:
        return 1.0 / float(self.frequency_hz)

    @property
    def on_time_s(self) -> float:
        return self.period_s * float(self.duty_cycle)

    @property
    def off_time_s(self) -> float:
        return self.period_s * (1.0 - float(self.duty_cycle))

    def check(self) -> Tuple[str, ...]:
        """Return warnings for settings that are accepted but likely to degrade the result.

        This never raises; hard range checks happen when the run starts.
        """
        warnings = []
        if self.frequency_hz <= 0:
            return ()
        half_period = 0.5 * self.period_s
        if self.integration_s is not None and self.integration_s > half_period:
            warnings.append(
                f"integration_s={self.integration_s:g} exceeds half the stimulus period "
                f"({half_period:g} s); integrated frames will mix ON and OFF states"
            )
        if self.duration_s < self.period_s:
            warnings.append(
                f"duration_s={self.duration_s:g} covers less than one stimulus period ({self.period_s:g} s)"
            )
        if self.settle_s is not None and self.settle_s >= self.duration_s:
            warnings.append(
                f"settle_s={self.settle_s:g} >= duration_s={self.duration_s:g}; the stimulus will never turn on"
            )
        return tuple(warnings)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LockInProfile:
        """Reconstruct from a dict (e.g. loaded from JSON). Unknown keys raise TypeError."""
        return cls(**dict(d))
