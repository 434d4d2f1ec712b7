"""Unit tests for note ↔ MIDI conversion helpers.

These tests exercise both :func:`note_to_midi` and :func:`midi_to_note`.
Invalid inputs must result in descriptive errors instead of silent failures.
"""

import sys
from pathlib import Path
import importlib
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

melody_composer = importlib.import_module("melody_composer")
note_to_midi = melody_composer.note_to_midi
midi_to_note = melody_composer.midi_to_note
get_interval = melody_composer.get_interval


def test_sharp_conversion():
    """Sharp notes convert to their expected MIDI numbers."""
    assert note_to_midi('C#4') == 61


def test_flat_conversion():
    """Flat notes produce the same value as their enharmonic sharps."""
    assert note_to_midi('Db4') == 61


def test_octave_follows_written_letter():
    """``B#3`` sounds as middle C and ``Cb4`` one semitone below it."""
    assert note_to_midi('B#3') == 60
    assert note_to_midi('Cb4') == 59


def test_double_accidentals():
    """Double flats produced by chord spelling convert correctly."""
    assert note_to_midi('Bbb4') == 69
    assert note_to_midi('F##4') == 67


def test_multi_digit_octaves_and_range_validation():
    """Values beyond the MIDI limits raise instead of clamping."""

    assert note_to_midi('C8') == 108
    assert note_to_midi('Gb9') == 126

    with pytest.raises(ValueError, match="out of range"):
        note_to_midi('C10')
    with pytest.raises(ValueError, match="out of range"):
        note_to_midi('Gb11')


def test_negative_octaves_raise_value_error():
    """Notes mapping below MIDI 0 raise ``ValueError`` instead of clamping."""

    assert note_to_midi('C-1') == 0

    with pytest.raises(ValueError, match="out of range"):
        note_to_midi('C-2')


@pytest.mark.parametrize("bad", ["H4", "C", "4C", "C#x"])
def test_malformed_notes_raise_value_error(bad):
    """Unknown letters, missing octaves and junk raise ``ValueError``."""

    with pytest.raises(ValueError, match="Invalid note format"):
        note_to_midi(bad)


def test_midi_to_note_range_validation():
    """``midi_to_note`` rejects values outside the valid 0-127 range."""

    assert midi_to_note(0) == "C-1"
    assert midi_to_note(127) == "G9"
    assert midi_to_note(61) == "C#4"

    with pytest.raises(ValueError, match="out of range"):
        midi_to_note(-1)
    with pytest.raises(ValueError, match="out of range"):
        midi_to_note(128)


def test_get_interval():
    assert get_interval("C4", "G4") == 7
    assert get_interval("G4", "C4") == 7


@pytest.mark.parametrize("name", sorted(melody_composer.theory.NOTE_TO_SEMITONE))
def test_note_to_midi_agrees_with_theory_tables(name):
    """MIDI numbers and scale semitones come from the same letter table."""
    theory = melody_composer.theory
    assert note_to_midi(f"{name}4") % 12 == theory.semitone_of(name)
    assert not hasattr(importlib.import_module("melody_composer.note_utils"), "_LETTER_SEMITONES")
