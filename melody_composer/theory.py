"""Pitch, scale and key tables shared by the harmonizer and its front ends.

Everything in this module is pure table lookup so the harmonizer, the MIDI
writer and the web interface agree on how notes are spelled.  Scales are built
one letter per degree which keeps spellings conventional (``F`` major contains
``Bb`` rather than ``A#``) and lets chord symbols derived from a scale read the
way a musician would write them.

Example
-------
>>> build_scale("D", "dorian")
['D', 'E', 'F', 'G', 'A', 'B', 'C']
>>> major_key("F").chords
['Fmaj7', 'Gm7', 'Am7', 'Bbmaj7', 'C7', 'Dm7', 'Em7b5']
"""

# Modification Summary
# ---------------------
# * Scales are spelled letter by letter instead of being read from the sharp
#   only ``NOTES`` list, so modal scales on flat tonics no longer mix ``A#``
#   and ``Bb`` spellings.
# * ``canonical_key`` maps enharmonic tonics such as ``A#`` or ``D#`` onto
#   the conventional major-key spelling so detected keys never produce double
#   sharps in their scales.
# * ``pitch_class`` returns an empty string for malformed notes instead of
#   raising, which lets key detection skip bad input the same way the browser
#   front end does.

from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

__all__ = [
    "NOTE_TO_SEMITONE",
    "NOTES",
    "LETTERS",
    "LETTER_SEMITONES",
    "MODES",
    "MODE_CHORDS",
    "Key",
    "parse_pitch",
    "pitch_class",
    "distinct_pitch_classes",
    "semitone_of",
    "spell",
    "canonical_key",
    "build_scale",
    "mode_key",
    "major_key",
    "minor_key",
]

# NOTE_TO_SEMITONE maps both sharp and flat spellings to the correct
# semitone offset within an octave.  Double accidentals are resolved by
# :func:`parse_pitch` rather than listed here.
NOTE_TO_SEMITONE: Dict[str, int] = {
    "C": 0,
    "B#": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "Fb": 4,
    "E#": 5,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
    "Cb": 11,
}

# Sharp spellings indexed by semitone, used whenever a pitch has no key
# context (e.g. converting a MIDI number back to a name).
NOTES: List[str] = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

LETTERS: List[str] = ["C", "D", "E", "F", "G", "A", "B"]
LETTER_SEMITONES: Dict[str, int] = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}

# Semitone offsets from the tonic for each church mode.
MODES: Dict[str, List[int]] = {
    "ionian": [0, 2, 4, 5, 7, 9, 11],
    "dorian": [0, 2, 3, 5, 7, 9, 10],
    "phrygian": [0, 1, 3, 5, 7, 8, 10],
    "lydian": [0, 2, 4, 6, 7, 9, 11],
    "mixolydian": [0, 2, 4, 5, 7, 9, 10],
    "aeolian": [0, 2, 3, 5, 7, 8, 10],
    "locrian": [0, 1, 3, 5, 6, 8, 10],
}

# Seventh-chord quality on each scale degree of every mode.
MODE_CHORDS: Dict[str, List[str]] = {
    "ionian": ["maj7", "m7", "m7", "maj7", "7", "m7", "m7b5"],
    "dorian": ["m7", "m7", "maj7", "7", "m7", "m7b5", "maj7"],
    "phrygian": ["m7", "maj7", "7", "m7", "m7b5", "maj7", "m7"],
    "lydian": ["maj7", "7", "m7", "m7b5", "maj7", "m7", "m7"],
    "mixolydian": ["7", "m7", "m7b5", "maj7", "m7", "m7", "maj7"],
    "aeolian": ["m7", "m7b5", "maj7", "m7", "m7", "maj7", "7"],
    "locrian": ["m7b5", "maj7", "m7", "m7", "maj7", "7", "m7"],
}

# Triad suffix implied by each seventh quality.
_TRIAD_OF: Dict[str, str] = {"maj7": "", "7": "", "m7": "m", "m7b5": "dim"}

# Tonics accepted verbatim as major keys.  Any other spelling is folded onto
# the entry in ``_PREFERRED_KEYS`` for its semitone.
_KEY_SPELLINGS = {"C", "G", "D", "A", "E", "B", "F#", "C#", "F", "Bb", "Eb", "Ab", "Db", "Gb"}
_PREFERRED_KEYS: List[str] = ["C", "Db", "D", "Eb", "E", "F", "F#", "G", "Ab", "A", "Bb", "B"]

_PITCH_RE = re.compile(r"([A-Ga-g])(#{1,2}|b{1,2})?(-?\d+)?")


class Key(NamedTuple):
    """Scale and diatonic harmony of a tonic in a given mode."""

    tonic: str
    type: str
    scale: List[str]
    chords: List[str]
    triads: List[str]


def parse_pitch(name: str) -> Tuple[str, int, Optional[int]]:
    """Split ``name`` into ``(letter, alteration, octave)``.

    Parameters
    ----------
    name:
        Note such as ``"C#4"`` or pitch class such as ``"Bb"``. Letters may be
        lowercase and accidentals may be doubled (``##`` or ``bb``).

    Returns
    -------
    tuple(str, int, int | None)
        Uppercase letter, accidental offset in semitones and the octave when
        one was supplied.

    Raises
    ------
    ValueError
        If ``name`` is not a valid pitch spelling.
    """

    match = _PITCH_RE.fullmatch(name.strip()) if isinstance(name, str) else None
    if not match:
        raise ValueError(f"Invalid note: {name}")
    letter, accidental, octave = match.groups()
    accidental = accidental or ""
    alter = accidental.count("#") - accidental.count("b")
    return letter.upper(), alter, int(octave) if octave is not None else None


def pitch_class(note: str) -> str:
    """Return the pitch class of ``note`` or ``""`` when it is malformed."""

    try:
        letter, alter, _ = parse_pitch(note)
    except ValueError:
        return ""
    return letter + ("#" * alter if alter > 0 else "b" * -alter)


def distinct_pitch_classes(notes: Iterable[str]) -> List[str]:
    """Return the distinct pitch classes of ``notes`` in order of first appearance.

    Malformed notes are skipped.
    """

    seen: List[str] = []
    for note in notes:
        pc = pitch_class(note)
        if pc and pc not in seen:
            seen.append(pc)
    return seen


def semitone_of(name: str) -> int:
    """Return the semitone (0-11) of a note or pitch-class spelling."""

    letter, alter, _ = parse_pitch(name)
    return (LETTER_SEMITONES[letter] + alter) % 12


def spell(letter_index: int, semitone: int) -> str:
    """Spell ``semitone`` on the letter at ``letter_index`` (0 == ``C``).

    The accidental is chosen as the smallest signed distance from the natural
    letter, so a diminished seventh on ``C`` spells as ``Bbb``.
    """

    letter = LETTERS[letter_index % 7]
    diff = (semitone - LETTER_SEMITONES[letter]) % 12
    if diff > 6:
        diff -= 12
    return letter + ("#" * diff if diff > 0 else "b" * -diff)


@lru_cache(maxsize=None)
def canonical_key(name: str) -> str:
    """Return the conventional major-key spelling for the tonic ``name``.

    Parameters
    ----------
    name:
        Tonic pitch class, case-insensitive.  Octaves are not permitted.

    Returns
    -------
    str
        ``name`` itself when it is a standard key signature tonic, otherwise
        its preferred enharmonic spelling (``A#`` becomes ``Bb``).

    Raises
    ------
    ValueError
        If ``name`` is not a pitch class.
    """

    try:
        letter, alter, octave = parse_pitch(name)
    except ValueError:
        raise ValueError(f"Unknown key: {name}") from None
    if octave is not None:
        raise ValueError(f"Unknown key: {name}")
    spelled = letter + ("#" * alter if alter > 0 else "b" * -alter)
    if spelled in _KEY_SPELLINGS:
        return spelled
    return _PREFERRED_KEYS[(LETTER_SEMITONES[letter] + alter) % 12]


def _check_mode(mode: str) -> str:
    normalised = mode.strip().lower()
    if normalised not in MODES:
        raise ValueError(f"Unknown mode: {mode}")
    return normalised


@lru_cache(maxsize=None)
def _scale(tonic: str, mode: str) -> Tuple[str, ...]:
    letter, alter, _ = parse_pitch(tonic)
    start = LETTERS.index(letter)
    root = LETTER_SEMITONES[letter] + alter
    return tuple(
        spell(start + degree, (root + offset) % 12)
        for degree, offset in enumerate(MODES[mode])
    )


def build_scale(tonic: str, mode: str = "ionian") -> List[str]:
    """Return the seven spelled degrees of ``mode`` built on ``tonic``.

    Raises
    ------
    ValueError
        If ``tonic`` is not a pitch class or ``mode`` is unknown.
    """

    return list(_scale(pitch_class(tonic) or tonic, _check_mode(mode)))


def mode_key(tonic: str, mode: str = "ionian") -> Key:
    """Return the :class:`Key` for ``tonic`` in ``mode``."""

    mode = _check_mode(mode)
    scale = build_scale(tonic, mode)
    qualities = MODE_CHORDS[mode]
    if mode == "ionian":
        kind = "major"
    elif mode == "aeolian":
        kind = "minor"
    else:
        kind = mode
    return Key(
        tonic=scale[0],
        type=kind,
        scale=scale,
        chords=[root + quality for root, quality in zip(scale, qualities)],
        triads=[root + _TRIAD_OF[quality] for root, quality in zip(scale, qualities)],
    )


def major_key(tonic: str) -> Key:
    """Return the major key on ``tonic``."""
    return mode_key(tonic, "ionian")


def minor_key(tonic: str) -> Key:
    """Return the natural minor key on ``tonic``."""
    return mode_key(tonic, "aeolian")
