"""Tests for writing harmonized melodies to MIDI and reading them back."""

import sys
from pathlib import Path

import mido
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from melody_composer.harmonizer import BarChord, Harmonizer  # noqa: E402
from melody_composer.midi_io import TICKS_PER_BEAT, create_midi_file, load_melody  # noqa: E402
from melody_composer.piano_roll import NoteEvent  # noqa: E402


def _absolute(track, kind="note_on"):
    """Return ``(tick, note, velocity)`` for messages of ``kind`` in ``track``."""
    tick = 0
    out = []
    for msg in track:
        tick += msg.time
        if msg.type == kind:
            out.append((tick, msg.note, msg.velocity))
    return out


def test_melody_and_chords_on_separate_tracks(tmp_path):
    melody = [NoteEvent("C4", 0), NoteEvent("E4", 1), NoteEvent("G4", 5)]
    chords = [BarChord(0, 0, "Cmaj7"), BarChord(1, 0, "Fmaj7")]
    out = tmp_path / "song.mid"

    mid = create_midi_file(melody, chords, str(out))

    assert out.exists()
    assert len(mid.tracks) == 2
    melody_on = _absolute(mid.tracks[0])
    assert [(t, n) for t, n, _ in melody_on] == [(0, 60), (480, 64), (5 * 480, 67)]
    # The first step of each bar is accented.
    assert melody_on[0][2] > melody_on[1][2]

    chord_on = _absolute(mid.tracks[1])
    assert sorted(n for t, n, _ in chord_on if t == 0) == [48, 52, 55, 59]
    assert sorted(n for t, n, _ in chord_on if t == 4 * TICKS_PER_BEAT) == [53, 57, 60, 64]
    chord_off = _absolute(mid.tracks[1], "note_off")
    assert max(t for t, _, _ in chord_off) == 8 * TICKS_PER_BEAT


def test_tempo_and_time_signature(tmp_path):
    mid = create_midi_file(
        [("A4", 0)], [], str(tmp_path / "x.mid"), beats_per_bar=3, bpm=120
    )
    metas = {msg.type: msg for msg in mid.tracks[0] if msg.is_meta}
    assert metas["set_tempo"].tempo == mido.bpm2tempo(120)
    assert metas["time_signature"].numerator == 3
    # No chords means no chord track.
    assert len(mid.tracks) == 1


def test_chords_on_melody_track(tmp_path):
    result = Harmonizer.suggest_chords(["C4", "E4", "G4"], bar_count=4)
    mid = create_midi_file(
        [("C4", 0), ("E4", 1)],
        result.chords,
        str(tmp_path / "merged.mid"),
        chords_separate=False,
    )
    assert len(mid.tracks) == 1
    notes_on = _absolute(mid.tracks[0])
    assert len(notes_on) == 2 + 4 * 4
    ticks = [t for t, _, _ in notes_on]
    assert ticks == sorted(ticks)


def test_repeated_note_retriggers(tmp_path):
    mid = create_midi_file([("C4", 0), ("C4", 1)], [], str(tmp_path / "r.mid"))
    kinds = [
        (msg.type, msg.time)
        for msg in mid.tracks[0]
        if msg.type in ("note_on", "note_off")
    ]
    assert kinds == [("note_on", 0), ("note_off", 480), ("note_on", 0), ("note_off", 480)]


def test_creates_parent_directory(tmp_path):
    out = tmp_path / "nested" / "dir" / "song.mid"
    create_midi_file([("C4", 0)], [], str(out))
    assert out.exists()


@pytest.mark.parametrize("kwargs", [{"bpm": 0}, {"beats_per_bar": 0}])
def test_invalid_arguments(tmp_path, kwargs):
    with pytest.raises(ValueError):
        create_midi_file([("C4", 0)], [], str(tmp_path / "bad.mid"), **kwargs)


def test_invalid_note_or_chord(tmp_path):
    with pytest.raises(ValueError):
        create_midi_file([("H4", 0)], [], str(tmp_path / "bad.mid"))
    with pytest.raises(ValueError):
        create_midi_file([("C4", 0)], [BarChord(0, 0, "Cxyz")], str(tmp_path / "bad.mid"))


def test_load_melody_reads_back_grid(tmp_path):
    out = tmp_path / "song.mid"
    melody = [NoteEvent("D4", 0), NoteEvent("F#4", 2), NoteEvent("A4", 3)]
    create_midi_file(melody, [BarChord(0, 0, "D7")], str(out))

    assert load_melody(str(out)) == melody


def test_load_melody_without_notes(tmp_path):
    out = tmp_path / "empty.mid"
    create_midi_file([], [], str(out))
    with pytest.raises(ValueError, match="No notes"):
        load_melody(str(out))
