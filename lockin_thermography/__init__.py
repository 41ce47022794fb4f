"""Lock-in Thermography -- phase-sensitive detection of periodic thermal signals.

A thermal camera watches a sample while a heater (or other excitation) is
switched on and off periodically. Correlating every pixel with the stimulus
frequency recovers weak periodic responses buried in noise and slow drift.

This package provides tools for:
- Summing and averaging frames (e.g. to capture a dark reference)
- Dark-field (fixed-pattern offset) correction
- Phase-binned ON/OFF accumulation and I/Q demodulation per pixel
- Running a measurement: toggling the stimulus while ingesting frames

Key principles:
- Phase comes from elapsed time only; the stimulus flag just picks the ON/OFF bucket
- The stimulus always ends OFF, whatever happens during a run
- No hardware access, rendering or persistence: sources and actuators are plugged in

Main subpackages:
- analysis: FrameAccumulator, DarkFieldCorrector, LockInAccumulator
- acquisition: LockInMeasurementRunner, frame source/stimulus interfaces, simulator
- models: Frame, LockInProfile, LockInProgress, LockInResult
"""

__all__ = []
