"""Chord symbol parsing, spelling and voicing.

Chord qualities are stored as interval formulas rather than a table of every
chord name so extended and altered chords (``Bbmaj7``, ``F#m7b5``, ``D6/9``)
can be spelled for any root.  Each formula entry pairs a scale degree with a
semitone offset; the degree chooses the letter and the offset chooses the
accidental, which keeps spellings such as ``Cdim7 -> C Eb Gb Bbb`` correct.

Example
-------
>>> chord_notes("Am7")
['A', 'C', 'E', 'G']
>>> chord_voicing("C13")
['C4', 'E4', 'G4', 'Bb4', 'D5', 'A5']
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, List, Tuple

from .note_utils import note_to_midi
from .theory import LETTERS, parse_pitch, semitone_of, spell

__all__ = [
    "CHORD_FORMULAS",
    "parse_chord",
    "chord_notes",
    "chord_voicing",
    "close_voicing",
]

# ``(degree, semitones)`` pairs for every supported chord suffix.  Degrees
# are one-based so ``(3, 4)`` reads as "a major third".
CHORD_FORMULAS: Dict[str, List[Tuple[int, int]]] = {
    "": [(1, 0), (3, 4), (5, 7)],
    "m": [(1, 0), (3, 3), (5, 7)],
    "dim": [(1, 0), (3, 3), (5, 6)],
    "aug": [(1, 0), (3, 4), (5, 8)],
    "maj7": [(1, 0), (3, 4), (5, 7), (7, 11)],
    "m7": [(1, 0), (3, 3), (5, 7), (7, 10)],
    "7": [(1, 0), (3, 4), (5, 7), (7, 10)],
    "dim7": [(1, 0), (3, 3), (5, 6), (7, 9)],
    "m7b5": [(1, 0), (3, 3), (5, 6), (7, 10)],
    "6": [(1, 0), (3, 4), (5, 7), (6, 9)],
    "m6": [(1, 0), (3, 3), (5, 7), (6, 9)],
    "9": [(1, 0), (3, 4), (5, 7), (7, 10), (9, 14)],
    # The eleventh omits the third which would clash with the suspended 11.
    "11": [(1, 0), (5, 7), (7, 10), (9, 14), (11, 17)],
    "13": [(1, 0), (3, 4), (5, 7), (7, 10), (9, 14), (13, 21)],
    "add9": [(1, 0), (3, 4), (5, 7), (9, 14)],
    "6/9": [(1, 0), (3, 4), (5, 7), (6, 9), (9, 14)],
    "sus2": [(1, 0), (2, 2), (5, 7)],
    "sus4": [(1, 0), (4, 5), (5, 7)],
}

# Alternative spellings accepted from user input.  Matching is case
# sensitive because ``M7`` and ``m7`` are different chords.
_SUFFIX_ALIASES: Dict[str, str] = {
    "M": "",
    "maj": "",
    "min": "m",
    "-": "m",
    "o": "dim",
    "°": "dim",
    "+": "aug",
    "M7": "maj7",
    "Maj7": "maj7",
    "Δ7": "maj7",
    "min7": "m7",
    "-7": "m7",
    "dom7": "7",
    "o7": "dim7",
    "°7": "dim7",
    "ø": "m7b5",
    "ø7": "m7b5",
    "min6": "m6",
    "69": "6/9",
    "sus": "sus4",
}

_CHORD_RE = re.compile(r"([A-Ga-g](?:#{1,2}|b{1,2})?)(.*)")


@lru_cache(maxsize=None)
def parse_chord(symbol: str) -> Tuple[str, str]:
    """Return ``(root, suffix)`` for the chord ``symbol``.

    Parameters
    ----------
    symbol:
        Chord name such as ``"Ebmaj7"`` or ``"f#m7b5"``. The root letter may
        be lowercase; the suffix must use one of the names in
        :data:`CHORD_FORMULAS` or a recognised alias.

    Returns
    -------
    tuple(str, str)
        Root pitch class with an uppercase letter and the canonical suffix.

    Raises
    ------
    ValueError
        If the root or suffix is not recognised.
    """

    match = _CHORD_RE.fullmatch(symbol.strip()) if isinstance(symbol, str) else None
    if not match:
        raise ValueError(f"Unknown chord: {symbol}")
    root, suffix = match.groups()
    suffix = _SUFFIX_ALIASES.get(suffix, suffix)
    if suffix not in CHORD_FORMULAS:
        raise ValueError(f"Unknown chord: {symbol}")
    letter, alter, _ = parse_pitch(root)
    return letter + ("#" * alter if alter > 0 else "b" * -alter), suffix


def chord_notes(symbol: str) -> List[str]:
    """Return the spelled pitch classes of ``symbol`` from the root upwards.

    Raises
    ------
    ValueError
        If ``symbol`` is not a known chord.
    """

    root, suffix = parse_chord(symbol)
    root_index = LETTERS.index(root[0])
    root_semitone = semitone_of(root)
    return [
        spell(root_index + degree - 1, (root_semitone + offset) % 12)
        for degree, offset in CHORD_FORMULAS[suffix]
    ]


def chord_voicing(symbol: str, octave: int = 4) -> List[str]:
    """Spread the tones of ``symbol`` across octaves.

    The first four tones sit in ``octave`` and every following group of four
    moves up one octave, so extended chords fan out above the seventh.
    """

    return [
        f"{note}{octave + i // 4}"
        for i, note in enumerate(chord_notes(symbol))
    ]


def close_voicing(symbol: str, octave: int = 4) -> List[int]:
    """Return ascending MIDI numbers for ``symbol`` with its root in ``octave``.

    Unlike :func:`chord_voicing` every tone lies above the previous one, which
    is what synthesizers and MIDI tracks need.

    Raises
    ------
    ValueError
        If the chord is unknown or any tone falls outside the MIDI range.
    """

    root, suffix = parse_chord(symbol)
    base = note_to_midi(f"{root}{octave}")
    notes = [base + offset for _, offset in CHORD_FORMULAS[suffix]]
    if notes[-1] > 127:
        raise ValueError(f"Voicing of {symbol} in octave {octave} exceeds MIDI range")
    return notes
