"""Chord suggestions for a user supplied melody.

The harmonizer infers a key from the melody, lays one diatonic chord on the
first beat of every bar using a fixed progression template and offers a list
of substitutions for each bar.  The rules are intentionally small table
lookups so results are predictable and easy to audition.

Example
-------
>>> result = Harmonizer.suggest_chords(["C4", "E4", "G4", "C5"], bar_count=4)
>>> [slot.chord for slot in result.chords]
['Cmaj7', 'Fmaj7', 'G7', 'Cmaj7']
>>> result.chords[0].alternatives[:3]
['Cm7', 'Cmaj7', 'C7']
"""

# 2025-03-02: Diatonic chords now follow the requested mode instead of always
# reading the major key of the detected tonic. Ionian output is unchanged.
# 2025-03-02: Suspensions and borrowed chords are always part of the
# alternatives list; callers wanting a shorter list pass ``limit``.
# 2025-03-09: Added ``rank_alternatives`` which scores each candidate chord
# against the melody's pitch classes.

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .chords import chord_notes, chord_voicing, parse_chord
from .theory import (
    MODES,
    canonical_key,
    mode_key,
    pitch_class,
    semitone_of,
)

__all__ = [
    "ChordSuggestion",
    "BarChord",
    "HarmonizationResult",
    "Harmonizer",
    "MODAL_QUALITIES",
    "JAZZ_EXTENSIONS",
    "SUSPENSIONS",
]

logger = logging.getLogger(__name__)

# Substitute qualities built on the same root as the diatonic chord.
MODAL_QUALITIES = ["m7", "maj7", "7", "dim7", "m7b5"]

# Jazz chord extensions
JAZZ_EXTENSIONS = ["9", "11", "13", "add9", "6/9"]

SUSPENSIONS = ["sus2", "sus4"]

# Modes whose third is major borrow from the parallel minor and vice versa.
_MAJOR_THIRD_MODES = {"ionian", "lydian", "mixolydian"}


@dataclass
class ChordSuggestion:
    """A candidate chord with its notes, category and fit score (0-1)."""

    chord: str
    notes: List[str]
    type: str
    fit: float


@dataclass
class BarChord:
    """Chord placed at ``beat`` of ``bar`` with its substitution options."""

    bar: int
    beat: int
    chord: str
    alternatives: List[str] = field(default_factory=list)


@dataclass
class HarmonizationResult:
    """Outcome of :meth:`Harmonizer.suggest_chords`."""

    chords: List[BarChord]
    key: str
    scale: str
    mode: str

    def to_dict(self, melody_notes: Sequence[str] = (), limit: Optional[int] = None) -> dict:
        """Return a JSON-ready summary with ranked alternatives per bar.

        ``limit`` caps the number of alternatives listed for each bar.
        """

        bars = []
        for slot in self.chords:
            ranked = Harmonizer.rank_alternatives(slot, melody_notes)
            alternatives = [s for s in ranked if s.chord != slot.chord]
            if limit is not None:
                alternatives = alternatives[: max(0, limit)]
            bars.append(
                {
                    "bar": slot.bar,
                    "beat": slot.beat,
                    "chord": slot.chord,
                    "notes": chord_notes(slot.chord),
                    "alternatives": [
                        {"chord": s.chord, "type": s.type, "fit": round(s.fit, 3)}
                        for s in alternatives
                    ],
                }
            )
        return {"key": self.key, "scale": self.scale, "mode": self.mode, "chords": bars}


class Harmonizer:
    """Static helpers that turn melody pitches into a chord progression."""

    @classmethod
    def suggest_chords(
        cls,
        melody_notes: Sequence[str],
        bar_count: int = 4,
        beats_per_bar: int = 4,
        preferred_mode: Optional[str] = None,
    ) -> HarmonizationResult:
        """Return one chord per bar for ``melody_notes``.

        Parameters
        ----------
        melody_notes : sequence of str
            Notes or pitch classes of the melody. Callers pass the distinct
            pitch classes in order of first appearance, so the key is the
            first pitch class entered; repeats given here would outweigh it.
        bar_count : int
            Number of bars to harmonize. Must be positive.
        beats_per_bar : int
            Beats in each bar. Must be positive. Chords are placed on beat 0.
        preferred_mode : str, optional
            Church mode used for the diatonic chords. Defaults to ``ionian``.

        Returns
        -------
        HarmonizationResult
            Bar chords together with the detected key, scale type and mode.

        Raises
        ------
        ValueError
            If ``bar_count`` or ``beats_per_bar`` is not positive or the mode
            is not the name of a known mode.
        """

        if bar_count <= 0:
            raise ValueError("bar_count must be positive")
        if beats_per_bar <= 0:
            raise ValueError("beats_per_bar must be positive")
        if preferred_mode is not None and not isinstance(preferred_mode, str):
            raise ValueError(f"Mode must be a string, not {preferred_mode!r}")

        mode = (preferred_mode or "ionian").strip().lower()
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {preferred_mode}")

        detected_key = cls.detect_key(melody_notes)
        key = mode_key(detected_key, mode)
        pattern = cls.progression_pattern(bar_count)

        chords: List[BarChord] = []
        for bar in range(bar_count):
            degree = pattern[bar % len(pattern)]
            main_chord = key.chords[degree] if degree < len(key.chords) else key.chords[0]
            chords.append(
                BarChord(
                    bar=bar,
                    beat=0,
                    chord=main_chord,
                    alternatives=cls.alternative_chords(detected_key, degree, mode),
                )
            )

        logger.debug(
            "Harmonized %d bars in %s %s: %s",
            bar_count,
            detected_key,
            mode,
            [slot.chord for slot in chords],
        )
        return HarmonizationResult(chords=chords, key=detected_key, scale=key.type, mode=mode)

    @staticmethod
    def progression_pattern(bar_count: int) -> List[int]:
        """Return scale degrees (0 == tonic) for a progression of ``bar_count`` bars."""

        if bar_count <= 4:
            return [0, 3, 4, 0]  # I - IV - V - I
        if bar_count <= 8:
            return [0, 0, 3, 3, 4, 4, 0, 0]
        # Verse-like progression for longer phrases
        return [0, 5, 3, 4, 0, 5, 3, 4, 5, 3, 0, 4, 0, 5, 4, 0]

    @staticmethod
    def alternative_chords(
        key: str,
        degree: int,
        mode: str = "ionian",
        limit: Optional[int] = None,
    ) -> List[str]:
        """Return substitutions for the chord on ``degree`` of ``key``.

        The list holds modal qualities on the same root, jazz extensions,
        suspensions and finally the chord borrowed from the parallel mode, in
        that order and without duplicates.  ``limit`` truncates the result.
        An out-of-range ``degree`` yields an empty list.

        Raises
        ------
        ValueError
            If ``key`` or ``mode`` is unknown.
        """

        home = mode_key(key, mode)
        mode = mode.strip().lower()
        if not 0 <= degree < len(home.scale):
            return []
        root = home.scale[degree]

        alternatives: List[str] = []

        def add(name: str) -> None:
            if name not in alternatives:
                alternatives.append(name)

        for quality in MODAL_QUALITIES:
            add(f"{root}{quality}")
        for ext in JAZZ_EXTENSIONS:
            add(f"{root}{ext}")
        for sus in SUSPENSIONS:
            add(f"{root}{sus}")

        parallel_mode = "aeolian" if mode in _MAJOR_THIRD_MODES else "ionian"
        add(mode_key(key, parallel_mode).chords[degree])

        if limit is not None:
            return alternatives[: max(0, limit)]
        return alternatives

    @staticmethod
    def detect_key(notes: Iterable[str]) -> str:
        """Return the most frequent pitch class of ``notes`` as a key tonic.

        Enharmonic spellings are counted together and reported using
        :func:`melody_composer.theory.canonical_key`. Ties go to the pitch
        class that appears first. Malformed notes are ignored and ``"C"`` is
        returned when nothing usable remains.
        """

        counts: Counter = Counter()
        for note in notes:
            pc = pitch_class(note)
            if not pc:
                logger.debug("Ignoring invalid note during key detection: %r", note)
                continue
            counts[canonical_key(pc)] += 1

        if not counts:
            return "C"
        return counts.most_common(1)[0][0]

    @staticmethod
    def chord_notes(chord_name: str) -> List[str]:
        return chord_notes(chord_name)

    @staticmethod
    def chord_voicing(chord_name: str, octave: int = 4) -> List[str]:
        return chord_voicing(chord_name, octave)

    @staticmethod
    def available_modes() -> List[str]:
        return list(MODES)

    @staticmethod
    def jazz_scales() -> List[str]:
        return ["melodic minor", "harmonic minor", "whole tone", "diminished", "altered"]

    @staticmethod
    def fit(chord_name: str, melody_notes: Iterable[str]) -> float:
        """Return the share of the melody's distinct pitch classes in ``chord_name``."""

        melody_pcs = {semitone_of(pc) for pc in map(pitch_class, melody_notes) if pc}
        if not melody_pcs:
            return 0.0
        chord_pcs = {semitone_of(n) for n in chord_notes(chord_name)}
        return len(melody_pcs & chord_pcs) / len(melody_pcs)

    @classmethod
    def rank_alternatives(
        cls, bar_chord: BarChord, melody_notes: Sequence[str]
    ) -> List[ChordSuggestion]:
        """Score the main chord and every alternative of ``bar_chord``.

        Suggestions are sorted by descending fit; equal scores keep the order
        of the main chord followed by the alternatives.  Alternatives rooted on
        a different pitch than the main chord are borrowed chords.
        """

        main_root, _ = parse_chord(bar_chord.chord)
        suggestions = [
            ChordSuggestion(
                chord=bar_chord.chord,
                notes=chord_notes(bar_chord.chord),
                type="diatonic",
                fit=cls.fit(bar_chord.chord, melody_notes),
            )
        ]
        for alt in bar_chord.alternatives:
            root, suffix = parse_chord(alt)
            if root != main_root:
                kind = "borrowed"
            elif suffix in JAZZ_EXTENSIONS:
                kind = "jazz"
            else:
                kind = "modal"
            suggestions.append(
                ChordSuggestion(
                    chord=alt,
                    notes=chord_notes(alt),
                    type=kind,
                    fit=cls.fit(alt, melody_notes),
                )
            )
        suggestions.sort(key=lambda s: s.fit, reverse=True)
        return suggestions
