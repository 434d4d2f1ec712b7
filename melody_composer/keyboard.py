"""Record melodies played on a computer or MIDI keyboard.

:class:`KeyboardRecorder` turns note-on/note-off pairs into
:class:`RecordedNote` entries with onsets measured from the start of the take.
The take ends either when :meth:`KeyboardRecorder.stop` is called or after a
period without any key activity, at which point the completion callback
receives the recorded notes.  The resulting list can be handed to
:meth:`melody_composer.piano_roll.PianoRoll.load_recording` for quantization.

Computer keys follow the usual tracker layout: ``z``-``m`` play octave 3,
the home row with the row above it plays octave 4 including sharps, and
``k`` onwards continues into octave 5.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

__all__ = ["KEY_TO_NOTE", "RecordedNote", "KeyboardRecorder", "record_midi_input"]

logger = logging.getLogger(__name__)

KEY_TO_NOTE: Dict[str, str] = {
    # Octave 3 (lower row)
    "z": "C3",
    "x": "D3",
    "c": "E3",
    "v": "F3",
    "b": "G3",
    "n": "A3",
    "m": "B3",
    # Octave 4 (home row with sharps above)
    "a": "C4",
    "w": "C#4",
    "s": "D4",
    "e": "D#4",
    "d": "E4",
    "f": "F4",
    "t": "F#4",
    "g": "G4",
    "y": "G#4",
    "h": "A4",
    "u": "A#4",
    "j": "B4",
    # Octave 5
    "k": "C5",
    "o": "C#5",
    "l": "D5",
    "p": "D#5",
    ";": "E5",
    "'": "F5",
    "[": "G5",
    "]": "A5",
    # Number row for the remaining high notes
    "1": "F#5",
    "2": "G#5",
    "3": "A#5",
    "4": "B5",
    "5": "C6",
}

# Seconds without key activity before a take finishes on its own.
INACTIVITY_TIMEOUT = 10.0


@dataclass
class RecordedNote:
    """A played note with onset and length in seconds."""

    note: str
    time: float
    duration: float


class KeyboardRecorder:
    """Capture timed notes from key presses.

    Parameters
    ----------
    on_complete:
        Called with the list of :class:`RecordedNote` when a take that
        contains at least one note ends.
    player:
        Optional object with ``note_on(note)`` and ``note_off(note)`` methods
        (for example :class:`melody_composer.playback.AudioPlayer`) used to
        sound keys as they are pressed, whether recording or not.
    inactivity_timeout:
        Seconds of silence after which the take stops automatically.
    clock:
        Callable returning the current time in seconds.
    """

    def __init__(
        self,
        on_complete: Callable[[List[RecordedNote]], None],
        player=None,
        inactivity_timeout: float = INACTIVITY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_complete = on_complete
        self.player = player
        self.inactivity_timeout = inactivity_timeout
        self.clock = clock
        self._recording = False
        self._start = 0.0
        self._notes: List[RecordedNote] = []
        self._active: Dict[str, float] = {}
        self._timer: Optional[threading.Timer] = None
        # ``stop`` can be reached from the inactivity timer thread as well as
        # the caller's thread.
        self._lock = threading.RLock()
        # Set whenever no take is in progress; ``stop`` sets it only after
        # ``on_complete`` has returned.
        self._idle = threading.Event()
        self._idle.set()

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def notes(self) -> List[RecordedNote]:
        """Notes recorded so far in the current take."""
        with self._lock:
            return list(self._notes)

    def start(self) -> None:
        """Begin a new take, discarding anything recorded before."""

        with self._lock:
            self._notes = []
            self._active.clear()
            self._start = self.clock()
            self._recording = True
            self._idle.clear()
            self._reset_timer()
        logger.info("Recording started")

    def stop(self) -> None:
        """End the take and deliver its notes to ``on_complete``."""

        with self._lock:
            notes = list(self._notes)
            was_recording = self._recording
            self._recording = False
            self._cancel_timer()
            held = list(self._active)
            self._notes = []
            self._active.clear()
        for note in held:
            self._sound_off(note)
        try:
            if was_recording:
                logger.info("Recording stopped with %d notes", len(notes))
            if notes:
                self.on_complete(notes)
        finally:
            self._idle.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current take has ended and been delivered.

        Returns ``False`` if ``timeout`` seconds pass first.
        """

        return self._idle.wait(timeout)

    def note_on(self, note: str) -> None:
        """Handle a key press for ``note``."""

        with self._lock:
            if not self._recording:
                self._sound_on(note)
                return
            if note in self._active:
                return
            self._active[note] = self.clock() - self._start
            self._reset_timer()
        self._sound_on(note)

    def note_off(self, note: str) -> None:
        """Handle a key release for ``note``."""

        self._sound_off(note)
        with self._lock:
            if not self._recording or note not in self._active:
                return
            onset = self._active.pop(note)
            now = self.clock() - self._start
            self._notes.append(RecordedNote(note=note, time=onset, duration=now - onset))
            self._reset_timer()

    def key_down(self, key: str) -> Optional[str]:
        """Press the note mapped to computer ``key``; unmapped keys are ignored."""

        note = KEY_TO_NOTE.get(key.lower())
        if note:
            self.note_on(note)
        return note

    def key_up(self, key: str) -> Optional[str]:
        note = KEY_TO_NOTE.get(key.lower())
        if note:
            self.note_off(note)
        return note

    def _sound_on(self, note: str) -> None:
        if self.player is not None:
            self.player.note_on(note)

    def _sound_off(self, note: str) -> None:
        if self.player is not None:
            self.player.note_off(note)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _reset_timer(self) -> None:
        self._cancel_timer()
        self._timer = threading.Timer(self.inactivity_timeout, self._on_inactive)
        self._timer.daemon = True
        self._timer.start()

    def _on_inactive(self) -> None:
        logger.info("No key activity for %.1f seconds", self.inactivity_timeout)
        self.stop()


def record_midi_input(recorder: KeyboardRecorder, port_name: Optional[str] = None):
    """Feed a physical MIDI keyboard into ``recorder``.

    Opens ``port_name`` (or the default input port) with :func:`mido.open_input`
    and forwards note messages to the recorder. A ``note_on`` with velocity
    zero is treated as a release, as most keyboards send it that way.

    Returns
    -------
    mido.ports.BaseInput
        The open port. Close it to stop listening.
    """

    import mido

    from .note_utils import midi_to_note

    def handle(message) -> None:
        if message.type == "note_on" and message.velocity > 0:
            recorder.note_on(midi_to_note(message.note))
        elif message.type in ("note_off", "note_on"):
            recorder.note_off(midi_to_note(message.note))

    port = mido.open_input(port_name, callback=handle)
    logger.info("Listening for MIDI input on %s", port.name)
    return port
