"""Utility functions for translating note names to MIDI numbers.

This module groups helpers dealing with note representation conversions.
The functions are separated from the main package so they can be reused by
the CLI, the web interface and the playback layer without pulling in heavier
dependencies.

Example
-------
>>> from melody_composer.note_utils import note_to_midi
>>> note_to_midi("C4")
60
"""

# Modification Summary
# ---------------------
# * ``note_to_midi`` parses notes with :func:`melody_composer.theory.parse_pitch`
#   so double accidentals produced by chord spelling (``Bbb4``) convert
#   correctly.
# * Octaves follow the written letter, so ``B#3`` is MIDI 60 and ``Cb4`` is
#   MIDI 59 rather than wrapping within the same octave.
# * Out-of-range values raise ``ValueError`` rather than being clamped.

from __future__ import annotations

import logging
from functools import lru_cache

from .theory import LETTER_SEMITONES, NOTES, parse_pitch

__all__ = ["note_to_midi", "midi_to_note", "get_interval"]


@lru_cache(maxsize=None)
def note_to_midi(note: str) -> int:
    """Convert a note string such as ``C#4`` into a MIDI number.

    Parameters
    ----------
    note:
        Note name including octave. Octaves may be negative or contain
        multiple digits.

    Returns
    -------
    int
        MIDI note number in the range ``0-127``.

    Raises
    ------
    ValueError
        If ``note`` is not properly formatted, lacks an octave or if the
        computed MIDI value falls outside the allowed ``0-127`` range.
    """

    try:
        letter, alter, octave = parse_pitch(note)
    except ValueError:
        logging.error("Invalid note format: %s", note)
        raise ValueError(f"Invalid note format: {note}") from None
    if octave is None:
        logging.error("Note is missing an octave: %s", note)
        raise ValueError(f"Invalid note format: {note}")

    # MIDI's octave numbers are offset by one relative to scientific pitch
    # notation, hence the ``+ 1`` adjustment.
    midi_val = (octave + 1) * 12 + LETTER_SEMITONES[letter] + alter

    # ``C-1`` -> 0 and ``G9`` -> 127 are the valid boundaries.
    if not 0 <= midi_val <= 127:
        logging.error("MIDI value out of range: %s -> %d", note, midi_val)
        raise ValueError(
            f"Computed MIDI value {midi_val} out of range 0-127 for note {note}"
        )

    return midi_val

def midi_to_note(midi_note: int) -> str:
    """Convert a MIDI number into a note name using sharps.

    Parameters
    ----------
    midi_note:
        Integer representing the MIDI note number. Valid values range from
        ``0`` (``C-1``) through ``127`` (``G9``).

    Returns
    -------
    str
        Note name with octave, e.g. ``C4``.

    Raises
    ------
    ValueError
        If ``midi_note`` is outside the inclusive ``0-127`` range.

    Examples
    --------
    >>> midi_to_note(60)
    'C4'
    >>> midi_to_note(61)
    'C#4'
    """

    if not 0 <= midi_note <= 127:
        raise ValueError(f"MIDI note {midi_note} out of range 0-127")

    octave = midi_note // 12 - 1
    name = NOTES[midi_note % 12]
    return f"{name}{octave}"

def get_interval(note1: str, note2: str) -> int:
    """Return the interval between ``note1`` and ``note2`` in semitones."""

    return abs(note_to_midi(note1) - note_to_midi(note2))
