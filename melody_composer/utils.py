"""Validation helpers shared by the CLI and the web interface.

Usage Example
-------------
>>> from melody_composer.utils import validate_time_signature, parse_melody
>>> validate_time_signature("3/4")
(3, 4)
>>> parse_melody("C4@0, E4@1")
[NoteEvent(note='C4', step=0), NoteEvent(note='E4', step=1)]

Revision Summary
----------------
* ``parse_melody`` accepts tokens without ``@step``; such notes follow the
  previous token so a plain ``"C4 E4 G4"`` lays the notes on consecutive
  steps.
"""

from __future__ import annotations

import re
from typing import List

from .note_utils import note_to_midi
from .piano_roll import BAR_OPTIONS, NoteEvent

__all__ = ["validate_time_signature", "parse_melody", "validate_bar_count"]

_TOKEN_SPLIT = re.compile(r"[,\s]+")


def validate_time_signature(ts: str) -> tuple[int, int]:
    """Parse and validate a time signature string.

    Parameters
    ----------
    ts:
        Time signature in ``"NUM/DEN"`` form. Whitespace around the
        separator is ignored.

    Returns
    -------
    tuple[int, int]
        ``(numerator, denominator)`` when ``ts`` is valid.

    Raises
    ------
    ValueError
        If ``ts`` is malformed or uses an unsupported denominator.
    """

    parts = ts.strip().split("/")
    if len(parts) != 2:
        raise ValueError(
            "Time signature must be in the form 'numerator/denominator'."
        )

    try:
        numerator = int(parts[0])
        denominator = int(parts[1])
    except ValueError as exc:  # non-integer values
        raise ValueError(
            "Time signature must contain integer numerator and denominator."
        ) from exc

    valid_denominators = {1, 2, 4, 8, 16}
    if numerator <= 0 or denominator not in valid_denominators:
        raise ValueError(
            "Time signature numerator must be > 0 and denominator one of 1, 2, 4, 8 or 16."
        )

    return numerator, denominator


def parse_melody(text: str) -> List[NoteEvent]:
    """Parse ``"C4@0, E4@1"`` style text into grid events.

    Tokens are separated by commas or whitespace. ``@step`` is optional and
    defaults to the step after the previous token.

    Raises
    ------
    ValueError
        If a note is invalid, a step is not a non-negative integer or the text
        contains no notes.
    """

    events: List[NoteEvent] = []
    next_step = 0
    for token in filter(None, _TOKEN_SPLIT.split(text.strip())):
        note, sep, step_text = token.partition("@")
        if sep:
            try:
                step = int(step_text)
            except ValueError:
                raise ValueError(f"Invalid step in {token!r}") from None
            if step < 0:
                raise ValueError(f"Step must be non-negative in {token!r}")
        else:
            step = next_step
        # Raises ValueError for malformed note names.
        note_to_midi(note)
        events.append(NoteEvent(note, step))
        next_step = step + 1

    if not events:
        raise ValueError("Melody must contain at least one note")
    return events


def validate_bar_count(bars: int) -> int:
    """Return ``bars`` when it is one of :data:`BAR_OPTIONS`."""

    if bars not in BAR_OPTIONS:
        options = ", ".join(str(b) for b in BAR_OPTIONS)
        raise ValueError(f"Bar count must be one of {options}")
    return bars
