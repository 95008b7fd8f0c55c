"""Audible feedback on autofocus quality: the focus figure of merit becomes a tone."""

from __future__ import annotations

import logging
import math
import subprocess
import threading
from typing import Any, Callable, Mapping, Optional, Sequence

_log = logging.getLogger(__name__)

PLAYER = "/usr/bin/play"
_INTERVAL_MS = 1000

Runner = Callable[[Sequence[str]], None]


def _run_detached(cmd: Sequence[str]) -> None:
    def run() -> None:
        try:
            subprocess.run(list(cmd), check=False)
        except OSError as exc:
            _log.debug("could not play tone: %s", exc)

    threading.Thread(target=run, name="acoustic-focus", daemon=True).start()


class AcousticFocusStage:
    """Plays a tone whose pitch follows the focus figure of merit, at most once a second.

    The FoM is mapped to a frequency between ``min_freq`` and ``max_freq``,
    either logarithmically or linearly. Tones are played by an external
    player in the background.
    """

    name = "acoustic_focus"

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        import time

        self._clock = clock if clock is not None else time.monotonic
        self._runner: Runner = runner if runner is not None else _run_detached
        self._last: Optional[float] = None
        self.min_fom = 1
        self.max_fom = 2000
        self.min_freq = 400
        self.max_freq = 2000
        self.duration = 0.1
        self.mapping = "log"

    def read(self, params: Mapping[str, Any]) -> None:
        """Take the stage's settings from a JSON-style parameter mapping."""
        self.min_fom = int(params.get("minFoM", 1))
        self.max_fom = int(params.get("maxFoM", 3000))
        self.min_freq = int(params.get("minFreq", 300))
        self.max_freq = int(params.get("maxFreq", 3000))
        self.duration = float(params.get("duration", 0.1))
        self.mapping = str(params.get("mapping", "log"))

    def tone_frequency(self, fom: int) -> int:
        """Map a figure of merit to a tone frequency in Hz, clamped to the range."""
        value = max(int(fom), self.min_fom)
        if self.mapping == "log":
            norm = math.log(value) - math.log(self.min_fom)
            denom = math.log(self.max_fom) - math.log(self.min_fom)
        else:
            norm = float(value - self.min_fom)
            denom = float(self.max_fom - self.min_fom)
        if denom == 0:
            freq = self.min_freq
        else:
            freq = self.min_freq + int(norm / denom * (self.max_freq - self.min_freq))
        return min(self.max_freq, max(self.min_freq, freq))

    def play_command(self, freq: int) -> list[str]:
        """Return the command line that plays a sine tone of ``freq`` Hz."""
        return [PLAYER, "-nq", "-t", "alsa", "synth", f"{self.duration:.6f}", "sine", str(freq)]

    def process(self, metadata: Mapping[str, Any]) -> bool:
        """Play a tone for the frame's ``FocusFoM`` if a second has passed; never drops the frame."""
        now = self._clock()
        if self._last is None:
            self._last = now
        elapsed_ms = int((now - self._last) * 1000)
        if elapsed_ms >= _INTERVAL_MS:
            self._last = now
            fom = metadata.get("FocusFoM")
            if fom is not None:
                self._runner(self.play_command(self.tone_frequency(fom)))
        return False