"""Measurement orchestration: frame sources, stimulus control and the lock-in runner."""

from .acquire import acquire_averaged_frame
from .broadcast import FrameBroadcaster
from .interfaces import FrameSource, StimulusController, StimulusFlag, frame_subscription
from .runner import (
    DirectIngest,
    IntegratingIngest,
    IntegrationBuffer,
    IntegrationState,
    LockInMeasurementRunner,
)
from .simulator import SimulatedStimulus, SyntheticThermalSource

__all__ = [
    "acquire_averaged_frame",
    "FrameBroadcaster",
    "FrameSource",
    "StimulusController",
    "StimulusFlag",
    "frame_subscription",
    "DirectIngest",
    "IntegratingIngest",
    "IntegrationBuffer",
    "IntegrationState",
    "LockInMeasurementRunner",
    "SimulatedStimulus",
    "SyntheticThermalSource",
]
