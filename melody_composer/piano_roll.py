"""Step grid holding the melody drawn or recorded by the user.

The grid has ``bar_count * beats_per_bar`` steps and one row per pitch of
octaves 5 and 4, mirroring the piano roll shown by the web interface.  A cell
is either on or off; clicking an active cell removes the note again.

Example
-------
>>> roll = PianoRoll(bar_count=4)
>>> roll.toggle("E4", 0)
True
>>> roll.notes()
['E4']
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from .theory import distinct_pitch_classes

__all__ = ["NoteEvent", "PianoRoll", "BAR_OPTIONS", "ROWS", "DEFAULT_STEP_DURATION"]

logger = logging.getLogger(__name__)

# Bar counts offered by the front ends.
BAR_OPTIONS: Tuple[int, ...] = (4, 8, 16, 32)

# Seconds per grid step when converting live recordings.
DEFAULT_STEP_DURATION = 0.25

_ROW_NAMES = ["C", "B", "A#", "A", "G#", "G", "F#", "F", "E", "D#", "D", "C#"]
_ROW_OCTAVES = [5, 4]

# Grid pitches from top to bottom.
ROWS: List[str] = [f"{name}{octave}" for octave in _ROW_OCTAVES for name in _ROW_NAMES]


@dataclass(frozen=True)
class NoteEvent:
    """A melody note placed on grid ``step``."""

    note: str
    step: int


class PianoRoll:
    """Mutable melody grid."""

    def __init__(self, bar_count: int = 4, beats_per_bar: int = 4) -> None:
        if bar_count <= 0:
            raise ValueError("bar_count must be positive")
        if beats_per_bar <= 0:
            raise ValueError("beats_per_bar must be positive")
        self.bar_count = bar_count
        self.beats_per_bar = beats_per_bar
        self._events: List[NoteEvent] = []

    @property
    def total_steps(self) -> int:
        return self.bar_count * self.beats_per_bar

    @property
    def events(self) -> List[NoteEvent]:
        """Placed notes ordered by step, then by insertion."""
        return sorted(self._events, key=lambda e: e.step)

    def _check_step(self, step: int) -> None:
        if not 0 <= step < self.total_steps:
            raise ValueError(
                f"Step {step} outside grid of {self.total_steps} steps"
            )

    def toggle(self, note: str, step: int) -> bool:
        """Add ``note`` at ``step`` or remove it when already present.

        Returns
        -------
        bool
            ``True`` when the cell is active after the call.

        Raises
        ------
        ValueError
            If ``step`` lies outside the grid.
        """

        self._check_step(step)
        event = NoteEvent(note, step)
        if event in self._events:
            self._events.remove(event)
            return False
        self._events.append(event)
        return True

    def is_active(self, note: str, step: int) -> bool:
        return NoteEvent(note, step) in self._events

    def clear(self) -> None:
        self._events.clear()

    def extend(self, events: Iterable[NoteEvent]) -> None:
        """Add ``events`` that are not yet on the grid."""

        for event in events:
            self._check_step(event.step)
            if event not in self._events:
                self._events.append(event)

    def set_bar_count(self, bar_count: int) -> None:
        """Resize the grid, dropping notes that fall beyond the new end."""

        if bar_count <= 0:
            raise ValueError("bar_count must be positive")
        self.bar_count = bar_count
        kept = [e for e in self._events if e.step < self.total_steps]
        if len(kept) != len(self._events):
            logger.info("Dropped %d notes beyond bar %d", len(self._events) - len(kept), bar_count)
        self._events = kept

    def notes(self) -> List[str]:
        """Return melody notes in playing order, repeats included."""
        return [e.note for e in self.events]

    def pitch_classes(self) -> List[str]:
        """Return the distinct pitch classes of the melody in order of appearance."""
        return distinct_pitch_classes(self.notes())

    def load_recording(self, recorded, step_duration: float = DEFAULT_STEP_DURATION) -> List[NoteEvent]:
        """Replace the melody with quantized ``recorded`` notes.

        Each recorded onset (seconds from the start of the take) snaps down to
        the step it falls in; notes landing past the end of the grid are
        discarded.

        Parameters
        ----------
        recorded:
            Iterable of objects exposing ``note`` and ``time`` attributes such
            as :class:`melody_composer.keyboard.RecordedNote`.
        step_duration:
            Length of one grid step in seconds. Must be positive.

        Returns
        -------
        list[NoteEvent]
            The events now on the grid.
        """

        if step_duration <= 0:
            raise ValueError("step_duration must be positive")
        events: List[NoteEvent] = []
        for item in recorded:
            step = math.floor(item.time / step_duration)
            if 0 <= step < self.total_steps:
                event = NoteEvent(item.note, step)
                if event not in events:
                    events.append(event)
        self._events = events
        return self.events
