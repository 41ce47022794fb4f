"""Hardware-free stand-ins for bench tests and demos.

``SimulatedStimulus`` records every actuation. ``SyntheticThermalSource``
emits frames on its own thread at a fixed rate; a rectangular hot spot warms
up while the stimulus is ON and cools down while it is OFF (first-order
response with time constant ``tau_s``), on top of a static fixed-pattern
offset and Gaussian noise.
"""

from __future__ import annotations

import threading
import time
from typing import List, Optional, Tuple

import numpy as np

from lockin_thermography.acquisition.broadcast import FrameBroadcaster
from lockin_thermography.models.frames import Frame


class SimulatedStimulus:
    """Stimulus controller double.

    ``calls`` lists ``"on"``/``"off"`` in call order. ``fail_on``/``fail_off``
    make the respective call report failure; ``raise_on`` makes ``turn_on``
    raise instead.
    """

    def __init__(self, *, fail_on: bool = False, fail_off: bool = False, raise_on: Optional[Exception] = None):
        self.fail_on = fail_on
        self.fail_off = fail_off
        self.raise_on = raise_on
        self.calls: List[str] = []
        self._on = False
        self._lock = threading.Lock()

    @property
    def is_on(self) -> bool:
        return self._on

    def turn_on(self, cancel: threading.Event) -> bool:
        with self._lock:
            self.calls.append("on")
            if self.raise_on is not None:
                raise self.raise_on
            if self.fail_on:
                return False
            self._on = True
            return True

    def turn_off(self, cancel: threading.Event) -> bool:
        with self._lock:
            self.calls.append("off")
            if self.fail_off:
                return False
            self._on = False
            return True


class SyntheticThermalSource(FrameBroadcaster):
    """Frame source producing a stimulus-driven hot spot.

    Parameters
    ----------
    width, height, meta_rows:
        Frame geometry; metadata rows are filled with zeros.
    fps:
        Emission rate of the capture thread.
    stimulus:
        Object with an ``is_on`` attribute (e.g. :class:`SimulatedStimulus`).
        Without it the hot spot never heats.
    hot_spot:
        ``(row0, row1, col0, col1)`` slice of the heated region.
    baseline, heat_amplitude, tau_s, noise_sigma, fpn_sigma:
        Signal model in raw counts.
    """

    def __init__(
        self,
        width: int = 16,
        height: int = 12,
        *,
        meta_rows: int = 0,
        fps: float = 50.0,
        stimulus: Optional[SimulatedStimulus] = None,
        hot_spot: Tuple[int, int, int, int] = (2, 6, 4, 10),
        baseline: float = 20000.0,
        heat_amplitude: float = 500.0,
        tau_s: float = 0.05,
        noise_sigma: float = 5.0,
        fpn_sigma: float = 0.0,
        seed: Optional[int] = None,
    ):
        super().__init__(width, height)
        self.meta_rows = int(meta_rows)
        self.fps = float(fps)
        self.stimulus = stimulus
        self.baseline = float(baseline)
        self.heat_amplitude = float(heat_amplitude)
        self.tau_s = float(tau_s)
        self.noise_sigma = float(noise_sigma)

        self._rng = np.random.default_rng(seed)
        vis_h = max(0, self.height - self.meta_rows)
        self._mask = np.zeros((vis_h, self.width), dtype=np.float64)
        r0, r1, c0, c1 = hot_spot
        self._mask[r0:r1, c0:c1] = 1.0
        if fpn_sigma > 0:
            self.fpn = self._rng.normal(0.0, float(fpn_sigma), size=(vis_h, self.width))
        else:
            self.fpn = np.zeros((vis_h, self.width))

        self._heat = 0.0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def hot_mask(self) -> np.ndarray:
        return self._mask.astype(bool)

    def _step_heat(self, dt: float) -> float:
        target = 1.0 if (self.stimulus is not None and self.stimulus.is_on) else 0.0
        if self.tau_s <= 0:
            self._heat = target
        else:
            self._heat += (target - self._heat) * (1.0 - np.exp(-dt / self.tau_s))
        return self._heat

    def make_frame(self, heat: float) -> Frame:
        img = self.baseline + self.fpn + self.heat_amplitude * heat * self._mask
        if self.noise_sigma > 0:
            img = img + self._rng.normal(0.0, self.noise_sigma, size=img.shape)
        img = np.clip(np.rint(img), 0, 65535).astype(np.uint16)
        raw = np.zeros(self.width * self.height, dtype=np.uint16)
        raw[: img.size] = img.reshape(-1)
        return Frame(width=self.width, height=self.height, raw=raw, meta_rows=self.meta_rows)

    def start(self) -> None:
        super().start()
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._capture_loop, name="synthetic-camera", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        super().stop()
        self._stop_event.set()
        th = self._thread
        if th is not None and th is not threading.current_thread():
            th.join()
        self._thread = None

    def _capture_loop(self) -> None:
        interval = 1.0 / self.fps
        last = time.perf_counter()
        while not self._stop_event.wait(interval):
            now = time.perf_counter()
            heat = self._step_heat(now - last)
            last = now
            self.publish(self.make_frame(heat))
