#!/usr/bin/env python3
"""Flask web interface for Melody Composer.

Users toggle cells on a piano-roll grid, pick the number of bars and a mode,
and the server answers with a chord progression.  Every bar lists its
alternatives together with how well they fit the melody; choosing one
overrides the suggested chord.  The result page offers the MIDI file for
download and, when FluidSynth is available, an audio preview.

* **CSRF protection** via Flask-WTF's :class:`~flask_wtf.csrf.CSRFProtect`
  for the HTML form. The JSON API is exempt so scripts can call it.
* **WSGI-friendly entry point** through the :func:`create_app` factory.
* **Request size limiting** with ``MAX_CONTENT_LENGTH``.
* **Rate limiting** with an in-memory per-IP throttle that answers ``429``
  with a ``Retry-After`` header.
"""
# Preview rendering runs on the optional Celery worker when one is
# configured. Broker failures and timeouts fall back to rendering in the
# request so the page still loads.
#
# Form state survives validation failures: the grid, bar count, mode and
# chord overrides are re-rendered with the offending field highlighted.
#
# ``/api/harmonize`` accepts the melody as a list of note names, a list of
# ``{"note", "step"}`` objects or ``NOTE@STEP`` text, and always answers
# errors with ``400`` and a JSON ``error`` field.

from __future__ import annotations

from tempfile import NamedTemporaryFile
from time import monotonic
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from melody_composer import playback
from melody_composer.chords import chord_notes, chord_voicing, close_voicing
from melody_composer.harmonizer import BarChord, Harmonizer
from melody_composer.midi_io import create_midi_file
from melody_composer.note_utils import note_to_midi
from melody_composer.piano_roll import BAR_OPTIONS, ROWS, NoteEvent, PianoRoll
from melody_composer.playback import MidiPlaybackError
from melody_composer.theory import MODES, distinct_pitch_classes
from melody_composer.utils import parse_melody, validate_bar_count, validate_time_signature

# Celery is an optional dependency.
try:
    from celery import Celery
except Exception:  # pragma: no cover - optional dependency
    Celery = None

try:  # pragma: no cover - optional dependency
    from celery.exceptions import TimeoutError as CeleryTimeoutError
except Exception:
    CeleryTimeoutError = TimeoutError

from flask import (
    Flask,
    render_template,
    request,
    flash,
    current_app,
    make_response,
    jsonify,
    Response,
)
from flask_wtf.csrf import CSRFProtect
import base64
import logging
import math
import os
import secrets
from threading import Lock

INSTRUMENTS = {
    "Piano": 0,
    "Electric Piano": 4,
    "Guitar": 24,
    "Strings": 48,
    "Flute": 73,
}

logger = logging.getLogger(__name__)

# ``init_app`` is invoked inside ``create_app`` so tests control when
# protection is enabled.
csrf = CSRFProtect()

celery_app = None
if Celery is not None:
    celery_app = Celery(
        __name__, broker=os.environ.get("CELERY_BROKER_URL", "memory://")
    )


# Client IP -> ``(window_start, count)`` for the current rate-limit window.
# Guarded by ``REQUEST_LOCK`` because the development server is threaded.
REQUEST_LOG: Dict[str, Tuple[float, int]] = {}

REQUEST_LOCK = Lock()

RATE_LIMIT_WINDOW = 60.0


def rate_limit() -> Optional[Response]:
    """Enforce a naive per-IP request limit.

    Registered as a ``before_request`` hook. ``RATE_LIMIT_PER_MINUTE`` in the
    application config sets the limit; a missing, zero or invalid value
    disables throttling. Stale entries are purged before each request is
    recorded.

    Returns:
        Optional[Response]: ``429`` response when the limit is exceeded,
        otherwise ``None`` to allow the request to proceed.
    """

    limit_raw = current_app.config.get("RATE_LIMIT_PER_MINUTE")
    if limit_raw is None:
        return None

    try:
        limit = int(limit_raw)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid RATE_LIMIT_PER_MINUTE %r; disabling rate limiting", limit_raw
        )
        return None

    if limit <= 0:
        if limit < 0:
            logger.warning(
                "RATE_LIMIT_PER_MINUTE must be positive; disabling rate limiting (received %r)",
                limit_raw,
            )
        return None

    now = monotonic()
    ip_addr = request.remote_addr or "unknown"

    with REQUEST_LOCK:
        expired = [
            ip for ip, (start, _) in REQUEST_LOG.items()
            if now - start >= RATE_LIMIT_WINDOW
        ]
        for ip in expired:
            del REQUEST_LOG[ip]

        window_start, count = REQUEST_LOG.get(ip_addr, (now, 0))

        if count >= limit:
            # Round up so clients are never told to retry immediately.
            remaining = math.ceil(
                max(0.0, RATE_LIMIT_WINDOW - (now - window_start))
            )
            response = make_response("Too many requests", 429)
            response.headers["Retry-After"] = str(remaining)
            return response

        REQUEST_LOG[ip_addr] = (window_start, count + 1)

    return None


def _generate_preview(
    melody: List[Tuple[str, int]],
    chords: List[Tuple[int, int, str]],
    beats_per_bar: int,
    bpm: int,
    instrument: str,
) -> tuple[str, str]:
    """Render the melody and chords to MIDI and, when possible, WAV.

    Arguments are plain lists so the function can run as a Celery task.
    Returns the base64 encoded WAV preview (empty when FluidSynth or a
    SoundFont is unavailable) and MIDI file.
    """

    tmp = NamedTemporaryFile(suffix=".mid", delete=False)
    wav_tmp = NamedTemporaryFile(suffix=".wav", delete=False)
    try:
        tmp_path = tmp.name
        wav_path = wav_tmp.name
    finally:
        tmp.close()
        wav_tmp.close()

    midi_bytes = b""
    wav_data = None
    try:
        create_midi_file(
            [NoteEvent(note, int(step)) for note, step in melody],
            [BarChord(bar=int(bar), beat=int(beat), chord=chord) for bar, beat, chord in chords],
            tmp_path,
            beats_per_bar=beats_per_bar,
            bpm=bpm,
            program=INSTRUMENTS.get(instrument, 0),
        )

        with open(tmp_path, "rb") as fh:
            midi_bytes = fh.read()

        try:
            playback.render_midi_to_wav(tmp_path, wav_path)
        except MidiPlaybackError as exc:
            logger.info("Preview audio unavailable: %s", exc)
            wav_data = None
        else:
            with open(wav_path, "rb") as fh:
                wav_data = fh.read()
    finally:
        if os.path.exists(wav_path):
            os.remove(wav_path)
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    audio_encoded = base64.b64encode(wav_data).decode("ascii") if wav_data else ""
    midi_encoded = base64.b64encode(midi_bytes).decode("ascii")
    return audio_encoded, midi_encoded


if celery_app is not None:
    generate_preview_task = celery_app.task(_generate_preview)  # type: ignore


def _render_preview(params: Dict[str, object]) -> tuple[str, str]:
    """Run ``_generate_preview`` on the worker, falling back to this process."""

    if celery_app is None:
        return _generate_preview(**params)
    try:
        async_result = generate_preview_task.delay(**params)  # type: ignore
        try:
            timeout = current_app.config.get("CELERY_TASK_TIMEOUT", 10)
            return tuple(async_result.get(timeout=timeout))
        except CeleryTimeoutError as exc:
            logger.exception("Timed out waiting for background worker: %s", exc)
            flash("Background worker timed out; generating preview synchronously.")
            return _generate_preview(**params)
    except Exception:  # pragma: no cover - triggered via tests
        logger.exception("Could not reach the background worker")
        flash(
            "Could not connect to the background worker; generating preview synchronously."
        )
        return _generate_preview(**params)


def index():
    """Render the piano roll and handle submissions.

    ``GET`` shows an empty grid. ``POST`` harmonizes the selected cells and
    renders the chord progression with alternatives, chord overrides, the
    MIDI download and the audio preview. Invalid values flash a message and
    redisplay the form with the user's selections intact.
    """

    if request.method != "POST":
        return _render_form()

    form_values = _extract_form_values(request.form)

    try:
        bars = validate_bar_count(int(form_values["bars"]))
    except ValueError:
        flash("Bar count must be one of " + ", ".join(str(b) for b in BAR_OPTIONS) + ".")
        return _render_form(form_values, {"bars"})
    form_values["bars"] = str(bars)

    try:
        bpm = int(form_values["bpm"])
    except ValueError:
        flash("BPM must be an integer.")
        return _render_form(form_values, {"bpm"})
    if bpm <= 0:
        flash("BPM must be greater than 0.")
        return _render_form(form_values, {"bpm"})

    try:
        beats_per_bar, denominator = validate_time_signature(str(form_values["timesig"]))
    except ValueError:
        flash(
            "Time signature must be in the form 'numerator/denominator' with numerator > 0 and denominator one of 1, 2, 4, 8 or 16."
        )
        return _render_form(form_values, {"timesig"})
    form_values["timesig"] = f"{beats_per_bar}/{denominator}"

    mode = str(form_values["mode"]).strip().lower()
    if mode not in MODES:
        flash(f"Unknown mode: {form_values['mode']}")
        return _render_form(form_values, {"mode"})

    instrument = str(form_values["instrument"])
    if instrument not in INSTRUMENTS:
        flash("Unknown instrument")
        return _render_form(form_values, {"instrument"})

    # Cells arrive laid out on the grid that was displayed; shrinking the bar
    # count drops the ones past the new end.
    try:
        grid_bars = validate_bar_count(int(form_values["grid_bars"]))
    except ValueError:
        grid_bars = bars
    roll = PianoRoll(grid_bars, beats_per_bar)
    try:
        roll.extend(_cells_to_events(form_values["cells"]))
        roll.set_bar_count(bars)
        if form_values["melody"]:
            roll.extend(parse_melody(str(form_values["melody"])))
    except ValueError as exc:
        flash(str(exc))
        return _render_form(form_values, {"melody"})
    form_values["cells"] = [f"{e.note}@{e.step}" for e in roll.events]

    if not roll.events:
        flash("Place at least one note on the piano roll.")
        return _render_form(form_values, {"melody"})

    melody_notes = roll.pitch_classes()
    result = Harmonizer.suggest_chords(
        melody_notes, bar_count=bars, beats_per_bar=beats_per_bar, preferred_mode=mode
    )

    overrides: Dict[int, str] = form_values["overrides"]  # type: ignore[assignment]
    progression = []
    for slot in result.chords:
        ranked = []
        for suggestion in Harmonizer.rank_alternatives(slot, melody_notes):
            if suggestion.chord not in {s.chord for s in ranked}:
                ranked.append(suggestion)
        choices = {s.chord for s in ranked}
        selected = overrides.get(slot.bar, slot.chord)
        if selected not in choices:
            selected = slot.chord
        progression.append(
            {
                "bar": slot.bar,
                "beat": slot.beat,
                "suggested": slot.chord,
                "chord": selected,
                "notes": chord_notes(selected),
                "options": ranked,
            }
        )

    params = dict(
        melody=[(e.note, e.step) for e in roll.events],
        chords=[(p["bar"], p["beat"], p["chord"]) for p in progression],
        beats_per_bar=beats_per_bar,
        bpm=bpm,
        instrument=instrument,
    )
    audio_encoded, midi_encoded = _render_preview(params)
    if not audio_encoded:
        flash(
            "Preview audio could not be generated because FluidSynth or a soundfont is unavailable."
        )

    return _render_form(
        form_values,
        result={"key": result.key, "mode": result.mode, "scale": result.scale},
        progression=progression,
        audio=audio_encoded,
        midi=midi_encoded,
    )


def _parse_api_melody(raw) -> Tuple[List[str], List[NoteEvent]]:
    """Return ``(notes, events)`` for any melody shape accepted by the API."""

    if isinstance(raw, str):
        events = parse_melody(raw)
        return [e.note for e in events], events
    if not isinstance(raw, list):
        raise ValueError("melody must be a string or a list")
    notes: List[str] = []
    events: List[NoteEvent] = []
    for index, item in enumerate(raw):
        if isinstance(item, str):
            notes.append(item)
            events.append(NoteEvent(item, index))
        elif isinstance(item, dict) and "note" in item:
            step = int(item.get("step", index))
            if step < 0:
                raise ValueError("step must be non-negative")
            notes.append(str(item["note"]))
            events.append(NoteEvent(str(item["note"]), step))
        else:
            raise ValueError(f"Invalid melody entry: {item!r}")
    return notes, events


def api_harmonize():
    """Harmonize a JSON melody and return the progression as JSON."""

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        notes, events = _parse_api_melody(payload.get("melody", []))
        bars = int(payload.get("bars", BAR_OPTIONS[0]))
        beats_per_bar = int(payload.get("beats_per_bar", 4))
        limit = payload.get("alternatives")
        result = Harmonizer.suggest_chords(
            distinct_pitch_classes(notes),
            bar_count=bars,
            beats_per_bar=beats_per_bar,
            preferred_mode=payload.get("mode"),
        )
        data = result.to_dict(notes, limit=int(limit) if limit is not None else None)
    except (TypeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400

    data["melody"] = [{"note": e.note, "step": e.step} for e in events]
    return jsonify(data)


def api_chord(symbol: str):
    """Return the notes and voicings of chord ``symbol``."""

    try:
        octave = int(request.args.get("octave", 4))
        data = {
            "chord": symbol,
            "notes": chord_notes(symbol),
            "voicing": chord_voicing(symbol, octave),
            "midi": close_voicing(symbol, octave),
        }
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(data)


def create_app() -> Flask:
    """Build and configure the Flask application instance.

    In production (non-debug) mode the factory requires ``FLASK_SECRET`` and
    ``CELERY_BROKER_URL``. Missing values trigger a :class:`RuntimeError`
    after a ``CRITICAL`` log entry. ``MAX_UPLOAD_MB`` bounds request size and
    ``RATE_LIMIT_PER_MINUTE`` enables the per-IP throttle.

    Returns:
        Flask: Configured application ready for use by a WSGI server.
    Raises:
        RuntimeError: If required environment variables are absent when debug
            mode is disabled.
    """

    app = Flask(__name__, template_folder="templates", static_folder="static")

    secret = os.environ.get("FLASK_SECRET")
    broker = os.environ.get("CELERY_BROKER_URL")
    try:
        max_mb = int(os.environ.get("MAX_UPLOAD_MB", "5"))
    except ValueError:
        max_mb = 5
        logger.warning("Invalid MAX_UPLOAD_MB value; defaulting to 5 MB.")
    rate_limit_env = os.environ.get("RATE_LIMIT_PER_MINUTE")
    try:
        rate_limit_per_minute = int(rate_limit_env) if rate_limit_env else None
    except ValueError:
        logger.warning(
            "RATE_LIMIT_PER_MINUTE must be an integer. Disabling rate limiting."
        )
        rate_limit_per_minute = None

    if not app.debug:
        if not secret:
            logger.critical("FLASK_SECRET environment variable must be set in production.")
            raise RuntimeError("Missing FLASK_SECRET")
        if not broker:
            logger.critical("CELERY_BROKER_URL environment variable must be set in production.")
            raise RuntimeError("Missing CELERY_BROKER_URL")

    if not secret:
        secret = secrets.token_urlsafe(32)
        logger.warning(
            "FLASK_SECRET environment variable not set. "
            "Using a randomly generated key; sessions will not persist across restarts."
        )
    app.secret_key = secret
    app.config["MAX_CONTENT_LENGTH"] = max_mb * 1024 * 1024
    app.config["RATE_LIMIT_PER_MINUTE"] = rate_limit_per_minute

    csrf.init_app(app)

    app.add_url_rule("/", view_func=index, methods=["GET", "POST"])
    app.add_url_rule(
        "/api/harmonize", view_func=csrf.exempt(api_harmonize), methods=["POST"]
    )
    app.add_url_rule("/api/chord/<path:symbol>", view_func=api_chord, methods=["GET"])

    app.before_request(rate_limit)

    @app.errorhandler(413)
    def handle_request_too_large(_err):
        """Return a concise message when the client uploads too much data."""
        return "Request exceeds configured size limit.", 413

    return app


# Default values for text inputs, stored as strings for the HTML ``value``
# attribute.
_FORM_TEXT_DEFAULTS: Dict[str, str] = {
    "melody": "",
    "bars": str(BAR_OPTIONS[0]),
    "mode": "ionian",
    "timesig": "4/4",
    "bpm": "240",
    "instrument": "Piano",
    # Bar count of the grid the submitted cells were placed on.
    "grid_bars": "",
}

# ---------------------------------------------------------------------------
# Form rendering helpers
# ---------------------------------------------------------------------------


def _default_form_values() -> Dict[str, object]:
    """Return a fresh copy of the default form values."""

    values: Dict[str, object] = dict(_FORM_TEXT_DEFAULTS)
    values["cells"] = []
    values["overrides"] = {}
    return values


def _cells_to_events(cells: Iterable[str]) -> List[NoteEvent]:
    events = []
    for cell in cells:
        note, _, step = cell.partition("@")
        try:
            note_to_midi(note)
            events.append(NoteEvent(note, int(step)))
        except ValueError:
            raise ValueError(f"Invalid grid cell: {cell}") from None
    return events


def _extract_form_values(form) -> Dict[str, object]:
    """Return request data merged with defaults for re-rendering.

    Grid cells arrive as repeated ``cell`` fields holding ``NOTE@STEP`` and
    chord overrides as ``chord_<bar>`` fields.
    """

    merged = _default_form_values()
    for field in _FORM_TEXT_DEFAULTS:
        if field in form:
            merged[field] = form.get(field, "")
    merged["cells"] = list(form.getlist("cell"))

    overrides: Dict[int, str] = {}
    for name in form:
        if name.startswith("chord_"):
            try:
                overrides[int(name[len("chord_"):])] = form[name]
            except ValueError:
                logger.debug("Ignoring malformed override field %s", name)
    merged["overrides"] = overrides
    return merged


def _build_form_context(
    form_values: Optional[Mapping[str, object]] = None,
    error_fields: Optional[Iterable[str]] = None,
) -> Dict[str, object]:
    """Assemble template context used for rendering the piano roll page."""

    context_values = _default_form_values()
    if form_values is not None:
        for name, value in form_values.items():
            # Only known fields reach the template.
            if name in context_values:
                context_values[name] = value

    try:
        bars = int(context_values["bars"])
    except ValueError:
        bars = BAR_OPTIONS[0]
    try:
        beats_per_bar = validate_time_signature(str(context_values["timesig"]))[0]
    except ValueError:
        beats_per_bar = 4

    highlighted: Set[str] = set(error_fields or [])

    return {
        "bar_options": BAR_OPTIONS,
        "modes": list(MODES),
        "instruments": list(INSTRUMENTS.keys()),
        "rows": ROWS,
        "steps": range(max(1, bars) * beats_per_bar),
        "grid_bars": max(1, bars),
        "beats_per_bar": beats_per_bar,
        "active": set(context_values["cells"]),  # type: ignore[arg-type]
        "form_values": context_values,
        "error_fields": highlighted,
    }


def _render_form(
    form_values: Optional[Mapping[str, object]] = None,
    error_fields: Optional[Iterable[str]] = None,
    **extra,
):
    """Render the piano roll page with supplied values and error highlights."""

    context = _build_form_context(form_values, error_fields)
    context.update(extra)
    return render_template("index.html", **context)


# Instantiate a default application for ad-hoc scripts and tests while still
# exposing ``create_app`` for production WSGI servers.
app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual launch
    app.run(debug=True)
