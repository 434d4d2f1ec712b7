"""Audio playback for melodies and chord suggestions using FluidSynth.

Two layers live here.  :class:`AudioPlayer` keeps a FluidSynth synthesizer
open so chords can be auditioned instantly and a melody with its chords can
be scheduled note by note, which is what the live keyboard and the chord
progression preview need.  The module level helpers work on whole MIDI files
instead: :func:`play_midi` plays one through FluidSynth,
:func:`render_midi_to_wav` renders one for the browser, and
:func:`open_default_player` hands it to the operating system as a last resort.

Example usage
-------------
>>> from melody_composer.playback import player
>>> player.initialize()
>>> player.play_chord(["C", "E", "G", "B"], "2n")

The SoundFont path can be supplied via the ``soundfont`` parameter or the
``SOUND_FONT`` environment variable.  When neither is given a platform
default is attempted.
"""

# Revision note
# -------------
# ``AudioPlayer`` replaces the one-shot preview for interactive use. Scheduled
# notes run on ``threading.Timer`` objects so ``stop`` can cancel anything
# that has not sounded yet.
#
# Durations accept the note-value strings used by the browser front end
# (``"2n"``, ``"8n"``, ``"4n."``) through ``note_value_seconds`` so both front
# ends describe timing the same way.
#
# ``render_midi_to_wav`` creates the destination directory and surfaces the
# stderr emitted by ``fluidsynth`` so users get actionable hints when
# rendering fails.

from __future__ import annotations

import os
import re
import shlex
import subprocess
import sys
import threading
import logging
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .note_utils import note_to_midi

__all__ = [
    "MidiPlaybackError",
    "AudioPlayer",
    "player",
    "note_value_seconds",
    "play_midi",
    "render_midi_to_wav",
    "open_default_player",
]


logger = logging.getLogger(__name__)

_MISSING_FLUIDSYNTH = (
    "fluidsynth not installed. Install the FluidSynth library and "
    "pyFluidSynth package."
)

_NOTE_VALUE_RE = re.compile(r"(\d+)([nt])(\.?)")

# MIDI "all notes off" controller.
_ALL_NOTES_OFF = 123

Duration = Union[str, float, int]


class MidiPlaybackError(RuntimeError):
    """Raised when MIDI playback or rendering fails."""


def note_value_seconds(value: Duration, bpm: float = 120) -> float:
    """Convert a duration into seconds at ``bpm`` quarter notes per minute.

    ``value`` may be a number of seconds or a note value such as ``"1n"``
    (whole note), ``"8n"`` (eighth), ``"4n."`` (dotted quarter) or ``"8t"``
    (eighth-note triplet).

    Raises
    ------
    ValueError
        If the value cannot be parsed or ``bpm`` is not positive.
    """

    if bpm <= 0:
        raise ValueError("bpm must be positive")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError("duration must be non-negative")
        return float(value)
    match = _NOTE_VALUE_RE.fullmatch(value.strip())
    if not match:
        try:
            return note_value_seconds(float(value), bpm)
        except ValueError:
            raise ValueError(f"Invalid duration: {value}") from None
    division, kind, dot = match.groups()
    if int(division) == 0:
        raise ValueError(f"Invalid duration: {value}")
    seconds = (240.0 / bpm) / int(division)
    if kind == "t":
        seconds *= 2 / 3
    if dot:
        seconds *= 1.5
    return seconds


def _with_octave(note: str, octave: int = 4) -> str:
    return note if note[-1:].isdigit() else f"{note}{octave}"


def _import_fluidsynth():
    try:
        import fluidsynth  # type: ignore
    except FileNotFoundError as exc:  # type: ignore[attr-defined]
        # ``fluidsynth`` C library not found.
        raise MidiPlaybackError(_MISSING_FLUIDSYNTH) from exc
    except Exception as exc:  # type: ignore
        # Any other import failure indicates PyFluidSynth itself is missing
        raise MidiPlaybackError("PyFluidSynth is required for playback") from exc
    return fluidsynth


def _resolve_soundfont(sf: Optional[str]) -> str:
    """Return the path to the soundfont to use for synthesis.

    Parameters
    ----------
    sf:
        Optional path supplied directly by the caller. When ``None`` the
        ``SOUND_FONT`` environment variable is consulted followed by
        platform-specific defaults.

    Returns
    -------
    str
        Absolute path to an existing SoundFont or DLS file.

    Raises
    ------
    MidiPlaybackError
        If no valid file can be located.
    """

    if sf:
        candidate = sf
    else:
        candidate = os.environ.get("SOUND_FONT")
        if not candidate:
            if sys.platform.startswith("win"):
                candidate = r"C:\\Windows\\System32\\drivers\\gm.dls"
            elif sys.platform == "darwin":
                candidate = "/Library/Audio/Sounds/Banks/FluidR3_GM.sf2"
            else:
                candidate = "/usr/share/sounds/sf2/TimGM6mb.sf2"

    candidate = os.path.expanduser(os.path.expandvars(candidate))

    if not os.path.isfile(candidate):
        raise MidiPlaybackError(
            "SoundFont not found. Provide a valid path via the argument or "
            "SOUND_FONT environment variable, or install a General MIDI soundfont."
        )

    return candidate


class AudioPlayer:
    """Long-lived FluidSynth synthesizer for auditioning notes and chords.

    Nothing is loaded until :meth:`initialize` runs, so creating the shared
    :data:`player` at import time is free.  Play requests made before
    initialisation are ignored.
    """

    def __init__(
        self,
        soundfont: Optional[str] = None,
        program: int = 0,
        velocity: int = 90,
        bpm: float = 120,
    ) -> None:
        self.soundfont = soundfont
        self.program = program
        self.velocity = velocity
        self.bpm = bpm
        self._synth = None
        self._timers: List[threading.Timer] = []
        self._sounding: set = set()
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._synth is not None

    def initialize(self) -> None:
        """Start the synthesizer and load the SoundFont; repeated calls are no-ops.

        Raises
        ------
        MidiPlaybackError
            If FluidSynth, its Python binding, the audio driver or the
            SoundFont is unavailable.
        """

        if self._synth is not None:
            return
        fluidsynth = _import_fluidsynth()
        sf_path = _resolve_soundfont(self.soundfont)
        try:
            synth = fluidsynth.Synth()
        except FileNotFoundError as exc:
            raise MidiPlaybackError(_MISSING_FLUIDSYNTH) from exc
        try:
            synth.start()
            sfid = synth.sfload(sf_path)
            synth.program_select(0, sfid, 0, self.program)
        except Exception as exc:
            synth.delete()
            raise MidiPlaybackError(f"Could not start audio driver: {exc}") from exc
        self._synth = synth
        logger.info("Audio player ready using %s", sf_path)

    def note_on(self, note: str) -> None:
        if self._synth is None:
            return
        midi = note_to_midi(_with_octave(note))
        with self._lock:
            self._synth.noteon(0, midi, self.velocity)
            self._sounding.add(midi)

    def note_off(self, note: str) -> None:
        if self._synth is None:
            return
        midi = note_to_midi(_with_octave(note))
        with self._lock:
            self._synth.noteoff(0, midi)
            self._sounding.discard(midi)

    def play_chord(self, notes: Iterable[str], duration: Duration = "1n") -> None:
        """Sound ``notes`` together for ``duration``.

        Pitch classes without an octave are placed in octave 4.
        """

        if self._synth is None:
            logger.debug("play_chord ignored; player not initialized")
            return
        seconds = note_value_seconds(duration, self.bpm)
        voiced = [_with_octave(n) for n in notes]
        for note in voiced:
            self.note_on(note)
        for note in voiced:
            self._schedule(seconds, self.note_off, note)

    def play_melody(self, events: Sequence[Tuple[str, Duration, float]]) -> None:
        """Schedule ``(note, duration, time)`` events relative to now.

        ``time`` is the onset in seconds; ``duration`` accepts anything
        :func:`note_value_seconds` does.
        """

        if self._synth is None:
            logger.debug("play_melody ignored; player not initialized")
            return
        for note, duration, start in events:
            seconds = note_value_seconds(duration, self.bpm)
            self._schedule(start, self.note_on, note)
            self._schedule(start + seconds, self.note_off, note)

    def _schedule(self, delay: float, func, *args) -> None:
        timer = threading.Timer(max(0.0, delay), func, args=args)
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def stop(self) -> None:
        """Cancel scheduled notes and silence everything that is sounding."""

        with self._lock:
            timers, self._timers = self._timers, []
            sounding, self._sounding = self._sounding, set()
        for timer in timers:
            timer.cancel()
        if self._synth is None:
            return
        for midi in sounding:
            self._synth.noteoff(0, midi)
        self._synth.cc(0, _ALL_NOTES_OFF, 0)

    def close(self) -> None:
        """Stop playback and release the synthesizer."""

        self.stop()
        if self._synth is not None:
            self._synth.delete()
            self._synth = None


# Shared player used by the command line interface.
player = AudioPlayer()


def play_midi(path: str, soundfont: Optional[str] = None) -> None:
    """Play ``path`` using FluidSynth in real time.

    Parameters
    ----------
    path:
        MIDI file to play.
    soundfont:
        Optional path to the SoundFont ``.sf2`` file. When omitted the
        ``SOUND_FONT`` environment variable or a system default is used.

    Raises
    ------
    MidiPlaybackError
        If PyFluidSynth is unavailable, ``fluidsynth`` is missing, or playback
        fails.
    """

    fluidsynth = _import_fluidsynth()
    sf_path = _resolve_soundfont(soundfont)

    try:
        synth = fluidsynth.Synth()
    except FileNotFoundError as exc:
        raise MidiPlaybackError(_MISSING_FLUIDSYNTH) from exc
    try:
        synth.start()
    except Exception as exc:
        raise MidiPlaybackError(f"Could not start audio driver: {exc}") from exc

    try:
        sfid = synth.sfload(sf_path)
        synth.program_select(0, sfid, 0, 0)
        synth.play_midi_file(path)
    except Exception as exc:
        raise MidiPlaybackError(f"Playback failed: {exc}") from exc
    finally:
        synth.delete()


def render_midi_to_wav(
    midi_path: str, wav_path: str, soundfont: Optional[str] = None
) -> None:
    """Render ``midi_path`` to ``wav_path`` using the ``fluidsynth`` CLI.

    Used by the web interface to embed an audio preview in the page. The
    output directory is created when it does not yet exist.

    Raises
    ------
    MidiPlaybackError
        If ``fluidsynth`` is missing, the MIDI file does not exist or the
        subprocess fails for any other reason.
    """

    sf_path = _resolve_soundfont(soundfont)

    if not os.path.isfile(midi_path):
        raise MidiPlaybackError("MIDI file not found")

    parent = os.path.dirname(wav_path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    cmd = [
        "fluidsynth",
        "-ni",
        "-F",
        wav_path,
        sf_path,
        midi_path,
    ]
    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise MidiPlaybackError(_MISSING_FLUIDSYNTH) from exc
    except subprocess.CalledProcessError as exc:
        err = exc.stderr.strip() if exc.stderr else str(exc)
        raise MidiPlaybackError(f"Failed to render MIDI: {err}") from exc
    except Exception as exc:
        raise MidiPlaybackError(f"Failed to render MIDI: {exc}") from exc


def open_default_player(path: str, *, delete_after: bool = False) -> None:
    """Launch ``path`` with the operating system's default MIDI player.

    Blocks until the player command completes, removing ``path`` afterwards
    when ``delete_after`` is ``True``. The ``MELODY_PLAYER`` environment
    variable may name a custom player command; it is split with
    ``shlex.split`` so quoted paths containing spaces work.

    Raises
    ------
    MidiPlaybackError
        Raised when the player command exits with a non-zero status.
    FileNotFoundError
        If ``path`` does not point to an existing file.
    """

    if not os.path.isfile(path):
        raise FileNotFoundError(f"MIDI file not found: {path}")

    custom = os.environ.get("MELODY_PLAYER")
    player_args = shlex.split(custom) if custom else None

    proc: subprocess.CompletedProcess[str] | None = None
    cmd: list[str] | None = None

    if sys.platform.startswith("win"):
        cmd = (
            player_args + [path]
            if player_args
            else ["cmd", "/c", "start", "/wait", "", path]
        )
    elif sys.platform == "darwin":
        cmd = (
            ["open", "-W", "-a"] + player_args + [path]
            if player_args
            else ["open", "-W", path]
        )
    else:
        if player_args:
            cmd = player_args + [path]
        else:
            # Not every desktop implements ``--wait``; retry without it.
            proc = subprocess.run(
                ["xdg-open", "--wait", path],
                check=False,
                capture_output=True,
                text=True,
            )
            if proc.returncode != 0:
                cmd = ["xdg-open", path]

    if cmd is not None:
        proc = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
        )

    assert proc is not None
    if proc.returncode != 0:
        logger.error("Player command failed: %s", proc.args)
        raise MidiPlaybackError(proc.stderr.strip() or "Player command failed")

    if delete_after:
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning("Failed to delete temporary file %s: %s", path, exc)
