#!/usr/bin/env python3
"""Melody Composer library.

This package turns a short melody into a chord progression.  A typical
workflow is to place notes on a :class:`PianoRoll` (or record them with a
:class:`KeyboardRecorder`), hand the notes to
:meth:`Harmonizer.suggest_chords` and write the result with
:func:`create_midi_file`.  A command line tool and a Flask web interface wrap
these calls so the harmonizer can be used without writing code.

Underlying Algorithm
--------------------
The most frequent pitch class of the melody is taken as the tonic.  The
chosen church mode supplies seven diatonic seventh chords, and a fixed
progression template maps each bar to one of them.  For every bar a list of
substitutes is offered: other qualities on the same root, jazz extensions,
suspensions and the chord borrowed from the parallel major or minor.

Algorithm Pseudocode
--------------------
::

    tonic = most_common(pitch_class(n) for n in melody)
    key = mode_key(tonic, mode)
    pattern = progression_pattern(bars)
    for bar in range(bars):
        degree = pattern[bar % len(pattern)]
        chords.append((key.chords[degree], alternatives(tonic, degree)))

Features include:
- Seven modes with spelled scales and diatonic seventh chords.
- Chord alternatives ranked by how well they fit the melody.
- Live recording from the computer or a MIDI keyboard.
- FluidSynth audio preview and MIDI export.
- Both CLI and web interfaces.
"""

# Modification Summary
# ---------------------
# * Settings default to ``~/.melody_composer_settings.json`` and can be moved
#   with ``MELODY_COMPOSER_SETTINGS_FILE``.
# * ``load_settings`` ignores files that do not hold a JSON object so stale
#   or hand-edited settings never break start-up.

__version__ = "0.1.0"

import json
import logging
import os
from pathlib import Path

# Default path for storing user preferences
env_path = os.environ.get("MELODY_COMPOSER_SETTINGS_FILE")
if env_path:
    DEFAULT_SETTINGS_FILE = Path(env_path).expanduser()
else:
    DEFAULT_SETTINGS_FILE = Path.home() / ".melody_composer_settings.json"


def load_settings(path: Path = DEFAULT_SETTINGS_FILE) -> dict:
    """Load saved user settings from ``path`` if it exists.

    @param path (Path): Location of the settings file.
    @returns dict: Loaded settings or an empty dictionary when unavailable.
    """
    if path.is_file():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except Exception as exc:  # pragma: no cover - log error but return defaults
            logging.error(f"Could not load settings: {exc}")
            return {}
        if isinstance(data, dict):
            return data
        logging.error("Ignoring settings file %s: expected a JSON object", path)
    return {}


def save_settings(settings: dict, path: Path = DEFAULT_SETTINGS_FILE) -> None:
    """Save user ``settings`` to ``path`` as JSON.

    @param settings (dict): Options to be persisted.
    @param path (Path): Destination file path.
    @returns None: Function does not return a value.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings, fh, indent=2)
    except Exception as exc:  # pragma: no cover - log error only
        logging.error(f"Could not save settings: {exc}")


from . import theory, chords  # noqa: E402,F401
from .theory import MODES, build_scale, canonical_key, mode_key  # noqa: E402,F401
from .chords import chord_notes, chord_voicing  # noqa: E402,F401
from .note_utils import note_to_midi, midi_to_note, get_interval  # noqa: E402,F401
from .harmonizer import Harmonizer, BarChord, HarmonizationResult  # noqa: E402,F401
from .piano_roll import PianoRoll, NoteEvent, BAR_OPTIONS  # noqa: E402,F401
from .keyboard import KeyboardRecorder, RecordedNote  # noqa: E402,F401
from . import midi_io  # noqa: F401,E402
from .midi_io import create_midi_file, load_melody, _open_default_player  # noqa: F401,E402


def run_cli():
    from .cli import run_cli as _run_cli
    _run_cli()


def main():
    from .cli import main as _main
    _main()


if __name__ == "__main__":
    main()
