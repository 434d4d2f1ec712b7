"""Command line helpers for Melody Composer.

Modification summary
--------------------
* Settings stored with ``--save-settings`` provide defaults for ``--mode``,
  ``--bars``, ``--bpm``, ``--instrument`` and ``--soundfont``; explicit flags
  always win. Saved values of the wrong type are logged and ignored.
* ``--audition`` plays the melody and the suggested chords through the live
  FluidSynth player; recorded notes sound through the same player.
* ``--record-port`` listens on a MIDI keyboard until the player stops for the
  inactivity timeout, then quantizes the take onto the grid.
* Logged playback failures before falling back to the system's default MIDI
  player so users still hear results while developers retain the traceback.

The ``run_cli`` function parses command line arguments, harmonizes the melody
and prints the chord progression.  :func:`main` configures logging and is the
target of the ``melody-composer`` console script.

Example
-------
Running ``python -m melody_composer.cli --melody "C4@0 E4@4 G4@8 C5@12" \
    --bars 4 --alternatives 3 --output out.mid`` prints one chord per bar
with the three best fitting alternatives and saves the melody and chords to
``out.mid``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Sequence

from . import load_settings, save_settings
from .harmonizer import Harmonizer
from .keyboard import INACTIVITY_TIMEOUT, KeyboardRecorder, RecordedNote
from .piano_roll import BAR_OPTIONS, NoteEvent, PianoRoll
from .theory import MODES
from .utils import parse_melody, validate_bar_count, validate_time_signature


__all__ = ["run_cli", "main", "build_parser"]

DEFAULT_BPM = 240


def build_parser(defaults: Optional[dict] = None) -> argparse.ArgumentParser:
    """Return the argument parser with ``defaults`` taken from saved settings."""

    defaults = defaults or {}
    parser = argparse.ArgumentParser(
        description="Suggest a chord progression for a melody and optionally save it as MIDI."
    )
    parser.add_argument("--list-modes", action="store_true", help="List the supported modes and exit")
    parser.add_argument("--list-jazz-scales", action="store_true", help="List the jazz scale names and exit")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--melody", type=str, help='Melody as NOTE@STEP tokens, e.g. "C4@0, E4@1, G4@2".')
    source.add_argument("--melody-file", type=str, help="Read the melody from a MIDI file or a text file of NOTE@STEP tokens.")
    source.add_argument(
        "--record-port",
        type=str,
        nargs="?",
        const="",
        metavar="PORT",
        help="Record the melody from a MIDI input port (default port when no name is given).",
    )
    parser.add_argument(
        "--bars",
        type=int,
        default=defaults.get("bars", BAR_OPTIONS[0]),
        help="Number of bars: " + ", ".join(str(b) for b in BAR_OPTIONS),
    )
    parser.add_argument("--timesig", type=str, default="4/4", help="Time signature in numerator/denominator format (e.g., 3/4).")
    parser.add_argument("--mode", type=str, default=defaults.get("mode", "ionian"), help="Church mode used for the diatonic chords.")
    parser.add_argument("--alternatives", type=int, default=0, metavar="N", help="Show the N best fitting alternatives per bar")
    parser.add_argument("--output", type=str, help="Output MIDI file path.")
    parser.add_argument("--bpm", type=int, default=defaults.get("bpm", DEFAULT_BPM), help="Beats per minute; one grid step is one beat.")
    parser.add_argument("--instrument", type=int, default=defaults.get("instrument", 0), help="MIDI program number")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--play", action="store_true", help="Play the result after it is created")
    parser.add_argument(
        "--audition",
        action="store_true",
        help="Play the melody with each bar's chord through the live synthesizer",
    )
    parser.add_argument(
        "--soundfont",
        type=str,
        default=defaults.get("soundfont"),
        help="Path to a SoundFont (.sf2) file used by --play, --audition and recording",
    )
    parser.add_argument("--settings-file", type=str, help="Path to the JSON settings file")
    parser.add_argument(
        "--save-settings",
        action="store_true",
        help="Store --mode, --bars, --bpm, --instrument and --soundfont as future defaults",
    )
    return parser


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# Saved settings must pass these checks before they become argument defaults.
_SETTING_CHECKS = {
    "mode": lambda v: isinstance(v, str) and v.strip().lower() in MODES,
    "bars": lambda v: _is_int(v) and v in BAR_OPTIONS,
    "bpm": lambda v: _is_int(v) and v > 0,
    "instrument": lambda v: _is_int(v) and 0 <= v <= 127,
    "soundfont": lambda v: isinstance(v, str) and v != "",
}


def _clean_settings(settings: dict) -> dict:
    """Return the usable entries of ``settings``; the rest are logged and dropped."""

    cleaned = {}
    for name, check in _SETTING_CHECKS.items():
        if name not in settings:
            continue
        value = settings[name]
        if check(value):
            cleaned[name] = value
        else:
            logging.warning("Ignoring saved setting %s=%r", name, value)
    return cleaned


def _settings_path(argv: Sequence[str]) -> Optional[Path]:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--settings-file", type=str)
    pre_args, _ = pre_parser.parse_known_args(argv)
    return Path(pre_args.settings_file).expanduser() if pre_args.settings_file else None


def _settings_for(argv: Sequence[str]) -> dict:
    settings_path = _settings_path(argv)
    return _clean_settings(load_settings(settings_path) if settings_path else load_settings())


def _live_player(soundfont: Optional[str] = None):
    """Return the shared synthesizer ready to sound notes, or ``None``."""

    from . import playback

    player = playback.player
    if soundfont:
        player.soundfont = soundfont
    try:
        player.initialize()
    except playback.MidiPlaybackError as exc:
        logging.warning("Live audio unavailable; continuing without sound: %s", exc)
        return None
    return player


def record_melody(
    port_name: Optional[str],
    timeout: float = INACTIVITY_TIMEOUT,
    soundfont: Optional[str] = None,
) -> List[RecordedNote]:
    """Record from a MIDI keyboard until ``timeout`` seconds pass without notes.

    Played notes sound through :data:`melody_composer.playback.player` when
    FluidSynth is available; otherwise the take is recorded silently.
    """

    from .keyboard import record_midi_input

    take: List[RecordedNote] = []
    player = _live_player(soundfont)
    recorder = KeyboardRecorder(take.extend, player=player, inactivity_timeout=timeout)
    port = record_midi_input(recorder, port_name or None)
    try:
        recorder.start()
        logging.info(
            "Recording; stop playing for %.0f seconds to finish.", timeout
        )
        recorder.wait()
    finally:
        port.close()
        if player is not None:
            player.stop()
    return take


def audition(
    chords,
    events: Sequence[NoteEvent],
    beats_per_bar: int,
    bpm: int,
    soundfont: Optional[str] = None,
    sleep=time.sleep,
) -> None:
    """Play ``events`` together with one chord per bar on the live synthesizer.

    Raises
    ------
    MidiPlaybackError
        If the synthesizer cannot be started.
    """

    from . import playback
    from .chords import chord_notes

    player = playback.player
    if soundfont:
        player.soundfont = soundfont
    player.initialize()

    beat = 60.0 / bpm
    bar_seconds = beats_per_bar * beat
    try:
        player.play_melody([(e.note, beat, e.step * beat) for e in events])
        for slot in chords:
            player.play_chord(chord_notes(slot.chord), bar_seconds)
            sleep(bar_seconds)
    finally:
        player.stop()


def _read_melody_file(path: str, beats_per_bar: int) -> List[NoteEvent]:
    if path.lower().endswith((".mid", ".midi")):
        from .midi_io import load_melody

        return load_melody(path, beats_per_bar)
    return parse_melody(Path(path).read_text(encoding="utf-8"))


def _result_to_dict(result, roll: PianoRoll, alternatives: int) -> dict:
    data = result.to_dict(roll.notes(), limit=alternatives or None)
    data["melody"] = [{"note": e.note, "step": e.step} for e in roll.events]
    return data


def run_cli(argv: Optional[Sequence[str]] = None) -> None:
    """Parse CLI arguments, harmonize the melody and write the results.

    When ``--play`` is supplied the MIDI file is previewed with FluidSynth;
    failures are logged and the system's default player is invoked so users
    still hear the result.
    """

    argv = list(sys.argv[1:] if argv is None else argv)
    if "--list-modes" in argv:
        print("\n".join(Harmonizer.available_modes()))
        return
    if "--list-jazz-scales" in argv:
        print("\n".join(Harmonizer.jazz_scales()))
        return

    args = build_parser(_settings_for(argv)).parse_args(argv)

    try:
        validate_bar_count(args.bars)
    except ValueError as exc:
        logging.error(str(exc))
        sys.exit(1)
    try:
        beats_per_bar, _ = validate_time_signature(args.timesig)
    except ValueError:
        logging.error(
            "Time signature must be in the form 'numerator/denominator' with numerator > 0 and denominator one of 1, 2, 4, 8 or 16."
        )
        sys.exit(1)
    if args.bpm <= 0:
        logging.error("BPM must be a positive integer.")
        sys.exit(1)
    if args.instrument < 0 or args.instrument > 127:
        logging.error("Instrument must be between 0 and 127.")
        sys.exit(1)
    if args.alternatives < 0:
        logging.error("Alternatives must be non-negative.")
        sys.exit(1)
    mode = args.mode.strip().lower()
    if mode not in MODES:
        logging.error(f"Unknown mode: {args.mode}. Choose from {', '.join(MODES)}.")
        sys.exit(1)

    roll = PianoRoll(args.bars, beats_per_bar)
    try:
        if args.melody:
            roll.extend(parse_melody(args.melody))
        elif args.melody_file:
            roll.extend(_read_melody_file(args.melody_file, beats_per_bar))
        elif args.record_port is not None:
            roll.load_recording(
                record_melody(args.record_port, soundfont=args.soundfont),
                step_duration=60.0 / args.bpm,
            )
        else:
            logging.error("A melody is required: use --melody, --melody-file or --record-port.")
            sys.exit(1)
    except (ValueError, OSError) as exc:
        logging.error(f"Could not read melody: {exc}")
        sys.exit(1)

    if not roll.events:
        logging.error("The melody is empty.")
        sys.exit(1)

    result = Harmonizer.suggest_chords(
        roll.pitch_classes(), bar_count=args.bars, beats_per_bar=beats_per_bar, preferred_mode=mode
    )
    data = _result_to_dict(result, roll, args.alternatives)

    if args.json:
        print(json.dumps(data, indent=2))
    else:
        print(f"Key: {result.key} {result.mode}")
        for bar in data["chords"]:
            line = f"Bar {bar['bar'] + 1}: {bar['chord']} ({' '.join(bar['notes'])})"
            if args.alternatives:
                alts = ", ".join(f"{a['chord']} {a['fit']:.2f}" for a in bar["alternatives"])
                line += f"  alternatives: {alts}"
            print(line)

    if args.audition:
        from .playback import MidiPlaybackError

        try:
            audition(result.chords, roll.events, beats_per_bar, args.bpm, soundfont=args.soundfont)
        except (MidiPlaybackError, ValueError) as exc:
            logging.error("Could not audition the progression: %s", exc)

    if args.save_settings:
        settings = {"mode": mode, "bars": args.bars, "bpm": args.bpm, "instrument": args.instrument}
        if args.soundfont:
            settings["soundfont"] = args.soundfont
        settings_path = _settings_path(argv)
        save_settings(settings, settings_path) if settings_path else save_settings(settings)

    output = args.output
    if output is None and args.play:
        handle = tempfile.NamedTemporaryFile(suffix=".mid", delete=False)
        handle.close()
        output = handle.name

    if output is None:
        logging.info("Harmonization complete.")
        return

    from .midi_io import create_midi_file, _open_default_player

    try:
        create_midi_file(
            roll.events,
            result.chords,
            output,
            beats_per_bar=beats_per_bar,
            bpm=args.bpm,
            program=args.instrument,
        )
    except OSError as exc:
        logging.error("Could not write MIDI file: %s", exc)
        sys.exit(1)

    if args.play:
        try:
            from . import playback

            playback.play_midi(output, soundfont=args.soundfont)
        except Exception:  # noqa: BLE001 - broad to ensure fallback
            logging.exception(
                "FluidSynth playback failed; using system default player as fallback.",
            )
            _open_default_player(output, delete_after=args.output is None)
    logging.info("Harmonization complete.")


def main() -> None:
    """Console entry point: configure logging and run the CLI."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    run_cli()


if __name__ == "__main__":
    main()
