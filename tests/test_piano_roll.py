"""Tests for the melody grid and quantization of recorded takes."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from melody_composer.keyboard import RecordedNote  # noqa: E402
from melody_composer.piano_roll import ROWS, NoteEvent, PianoRoll  # noqa: E402


def test_rows_cover_two_octaves_top_down():
    assert len(ROWS) == 24
    assert ROWS[0] == "C5"
    assert ROWS[-1] == "C#4"


def test_toggle_adds_then_removes():
    roll = PianoRoll(bar_count=4)

    assert roll.toggle("E4", 0) is True
    assert roll.is_active("E4", 0)
    assert roll.toggle("E4", 0) is False
    assert not roll.is_active("E4", 0)


def test_toggle_outside_grid_raises():
    roll = PianoRoll(bar_count=4, beats_per_bar=4)
    assert roll.total_steps == 16
    with pytest.raises(ValueError, match="outside grid"):
        roll.toggle("C4", 16)
    with pytest.raises(ValueError):
        roll.toggle("C4", -1)


def test_invalid_dimensions():
    with pytest.raises(ValueError):
        PianoRoll(bar_count=0)
    with pytest.raises(ValueError):
        PianoRoll(beats_per_bar=0)


def test_events_sorted_by_step():
    roll = PianoRoll()
    roll.toggle("G4", 2)
    roll.toggle("C4", 0)
    roll.toggle("E4", 2)

    assert roll.notes() == ["C4", "G4", "E4"]
    assert roll.events[0] == NoteEvent("C4", 0)


def test_extend_skips_existing_events():
    roll = PianoRoll()
    roll.extend([NoteEvent("C4", 0), NoteEvent("C4", 0), NoteEvent("D4", 1)])
    assert len(roll.events) == 2


def test_set_bar_count_drops_overflow():
    roll = PianoRoll(bar_count=8)
    roll.toggle("C4", 3)
    roll.toggle("D4", 20)

    roll.set_bar_count(4)

    assert roll.notes() == ["C4"]
    assert roll.total_steps == 16


def test_pitch_classes_are_distinct_in_order():
    roll = PianoRoll()
    for step, note in enumerate(["E4", "C5", "E5", "G4"]):
        roll.toggle(note, step)
    assert roll.pitch_classes() == ["E", "C", "G"]


def test_load_recording_quantizes_and_filters():
    roll = PianoRoll(bar_count=4)
    roll.toggle("B4", 5)
    take = [
        RecordedNote("C4", 0.0, 0.2),
        RecordedNote("E4", 0.26, 0.1),
        RecordedNote("E4", 0.3, 0.1),
        RecordedNote("G4", 0.49, 0.1),
        RecordedNote("C5", 10.0, 0.2),
    ]

    events = roll.load_recording(take)

    assert events == [NoteEvent("C4", 0), NoteEvent("E4", 1), NoteEvent("G4", 1)]
    assert not roll.is_active("B4", 5)


def test_load_recording_custom_step_duration():
    roll = PianoRoll()
    events = roll.load_recording([RecordedNote("A4", 1.0, 0.5)], step_duration=0.5)
    assert events == [NoteEvent("A4", 2)]
    with pytest.raises(ValueError):
        roll.load_recording([], step_duration=0)
