"""Writing harmonized melodies to MIDI and reading melodies back.

Modification summary
--------------------
* ``create_midi_file`` writes the piano-roll grid instead of a free rhythm:
  every melody note occupies exactly one step and each chord holds for one
  bar starting at its ``(bar, beat)`` position.
* Chord events are built as absolute ticks and converted to delta times after
  sorting, which lets them share the melody track when ``chords_separate`` is
  ``False``.
* ``load_melody`` reads the first note-bearing track of a file back into grid
  events so saved sketches can be harmonized again.
* The destination directory is created automatically.

The module is separated from the main package so applications can use the
MIDI functionality without importing the CLI.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Sequence, Tuple, Union

if TYPE_CHECKING:
    # ``MidiFile`` is only needed for type checking.
    from mido import MidiFile

from .chords import close_voicing
from .harmonizer import BarChord
from .note_utils import note_to_midi
from .piano_roll import NoteEvent

__all__ = ["create_midi_file", "load_melody", "_open_default_player", "TICKS_PER_BEAT"]

TICKS_PER_BEAT = 480

# Velocities keep the melody above the accompaniment.
MELODY_VELOCITY = 80
DOWNBEAT_ACCENT = 10
CHORD_VELOCITY = 60

MelodyItem = Union[NoteEvent, Tuple[str, int]]


def _as_event(item: MelodyItem) -> NoteEvent:
    if isinstance(item, NoteEvent):
        return item
    note, step = item
    return NoteEvent(note, int(step))


def _to_delta(events: List[Tuple[int, int, "object"]]) -> list:
    """Sort ``(tick, order, message)`` triples and convert to delta times."""

    events.sort(key=lambda e: (e[0], e[1]))
    messages = []
    last = 0
    for tick, _, msg in events:
        msg.time = tick - last
        messages.append(msg)
        last = tick
    return messages


def create_midi_file(
    melody: Iterable[MelodyItem],
    chords: Sequence[BarChord],
    output_file: str,
    *,
    beats_per_bar: int = 4,
    bpm: int = 240,
    program: int = 0,
    chord_octave: int = 3,
    chords_separate: bool = True,
) -> "MidiFile":
    """Write ``melody`` and its ``chords`` to ``output_file``.

    Parameters
    ----------
    melody:
        :class:`~melody_composer.piano_roll.NoteEvent` objects or
        ``(note, step)`` pairs. One step equals one beat.
    chords:
        Bar chords as returned by
        :meth:`melody_composer.harmonizer.Harmonizer.suggest_chords`.
    output_file:
        Destination path. Missing parent folders are created.
    beats_per_bar:
        Numerator of the written ``4`` based time signature.
    bpm:
        Tempo in beats per minute. The default of ``240`` plays one step every
        quarter of a second.
    program:
        General MIDI instrument for all tracks.
    chord_octave:
        Octave of the chord root; the remaining tones stack upward from it.
    chords_separate:
        Put the chords on their own track rather than the melody track.

    Returns
    -------
    MidiFile
        In-memory representation of the written file.

    Raises
    ------
    ValueError
        If ``bpm`` or ``beats_per_bar`` is not positive, or a note or chord
        name is invalid.
    """

    try:
        import mido
        from mido import Message, MidiFile, MidiTrack
    except ModuleNotFoundError as exc:
        raise ImportError(
            "mido is required to create MIDI files; install it with 'pip install mido'"
        ) from exc

    if bpm <= 0:
        raise ValueError("bpm must be a positive integer")
    if beats_per_bar <= 0:
        raise ValueError("beats_per_bar must be positive")

    mid = MidiFile(ticks_per_beat=TICKS_PER_BEAT)
    track = MidiTrack()
    mid.tracks.append(track)
    track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm), time=0))
    track.append(
        mido.MetaMessage(
            "time_signature", numerator=beats_per_bar, denominator=4, time=0
        )
    )
    track.append(Message("program_change", program=program, time=0))

    # Note-offs sort before note-ons on the same tick so repeated pitches on
    # consecutive steps retrigger cleanly.
    melody_events: List[Tuple[int, int, Message]] = []
    for event in map(_as_event, melody):
        if event.step < 0:
            raise ValueError(f"Negative step for note {event.note}")
        midi_note = note_to_midi(event.note)
        velocity = MELODY_VELOCITY
        if event.step % beats_per_bar == 0:
            velocity = min(velocity + DOWNBEAT_ACCENT, 127)
        start = event.step * TICKS_PER_BEAT
        melody_events.append(
            (start, 1, Message("note_on", note=midi_note, velocity=velocity))
        )
        melody_events.append(
            (
                start + TICKS_PER_BEAT,
                0,
                Message("note_off", note=midi_note, velocity=velocity),
            )
        )

    chord_events: List[Tuple[int, int, Message]] = []
    bar_ticks = beats_per_bar * TICKS_PER_BEAT
    for slot in chords:
        start = (slot.bar * beats_per_bar + slot.beat) * TICKS_PER_BEAT
        for note_num in close_voicing(slot.chord, chord_octave):
            chord_events.append(
                (start, 1, Message("note_on", note=note_num, velocity=CHORD_VELOCITY))
            )
            chord_events.append(
                (
                    start + bar_ticks,
                    0,
                    Message("note_off", note=note_num, velocity=CHORD_VELOCITY),
                )
            )

    if chords_separate:
        track.extend(_to_delta(melody_events))
        if chord_events:
            chord_track = MidiTrack()
            chord_track.append(Message("program_change", program=program, time=0))
            chord_track.extend(_to_delta(chord_events))
            mid.tracks.append(chord_track)
    else:
        track.extend(_to_delta(melody_events + chord_events))

    Path(output_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
    mid.save(output_file)
    logging.info("MIDI file saved to %s", output_file)
    return mid


def load_melody(path: str, beats_per_bar: int = 4) -> List[NoteEvent]:
    """Read the melody from the first track of ``path`` that contains notes.

    Onsets are quantized down to the beat they fall in and repeated
    ``(note, step)`` pairs are dropped.

    Raises
    ------
    ValueError
        If ``beats_per_bar`` is not positive or the file holds no notes.
    """

    import mido

    from .note_utils import midi_to_note

    if beats_per_bar <= 0:
        raise ValueError("beats_per_bar must be positive")

    mid = mido.MidiFile(path)
    for track in mid.tracks:
        events: List[NoteEvent] = []
        tick = 0
        for msg in track:
            tick += msg.time
            if msg.type == "note_on" and msg.velocity > 0:
                event = NoteEvent(midi_to_note(msg.note), tick // mid.ticks_per_beat)
                if event not in events:
                    events.append(event)
        if events:
            logging.info("Loaded %d notes from %s", len(events), path)
            return events
    raise ValueError(f"No notes found in {path}")


def _open_default_player(path: str, *, delete_after: bool = False) -> None:
    """Launch ``path`` asynchronously with the system default MIDI player.

    ``open_default_player`` blocks until the external program exits, so this
    helper runs it in a daemon thread. The thread removes ``path`` after
    playback when ``delete_after`` is ``True``.
    """

    from .playback import open_default_player

    def runner() -> None:
        try:
            open_default_player(path, delete_after=delete_after)
        except Exception as exc:  # pragma: no cover - platform dependent
            logging.error("Could not open MIDI file: %s", exc)

    threading.Thread(target=runner, daemon=True).start()
