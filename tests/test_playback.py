"""Tests for the playback helper functions.

``_resolve_soundfont`` must honour the ``SOUND_FONT`` environment variable
and fall back to sensible defaults on each platform. ``render_midi_to_wav``
and ``open_default_player`` should invoke ``subprocess.run`` with the right
commands, and :class:`AudioPlayer` should drive the synthesizer without the
real FluidSynth library.
"""

import subprocess
import sys
import types
from pathlib import Path

import importlib

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

playback = importlib.import_module("melody_composer.playback")
_resolve_soundfont = playback._resolve_soundfont
render_midi_to_wav = playback.render_midi_to_wav
MidiPlaybackError = playback.MidiPlaybackError
open_default_player = playback.open_default_player
note_value_seconds = playback.note_value_seconds
AudioPlayer = playback.AudioPlayer


class DummySynth:
    """Record calls made against the synthesizer."""

    instances: list = []

    def __init__(self) -> None:
        self.calls = []
        self.deleted = False
        DummySynth.instances.append(self)

    def start(self) -> None:
        self.calls.append(("start",))

    def sfload(self, path: str) -> int:
        self.calls.append(("sfload", path))
        return 7

    def program_select(self, chan, sfid, bank, preset) -> None:
        self.calls.append(("program_select", chan, sfid, bank, preset))

    def noteon(self, chan, key, vel) -> None:
        self.calls.append(("noteon", chan, key, vel))

    def noteoff(self, chan, key) -> None:
        self.calls.append(("noteoff", chan, key))

    def cc(self, chan, ctrl, val) -> None:
        self.calls.append(("cc", chan, ctrl, val))

    def delete(self) -> None:
        self.deleted = True


class FailStartSynth(DummySynth):
    def start(self) -> None:  # type: ignore[override]
        raise RuntimeError("no audio driver")


class FakeTimer:
    """Stand-in for ``threading.Timer`` that never fires on its own."""

    created: list = []

    def __init__(self, delay, func, args=()) -> None:
        self.delay = delay
        self.func = func
        self.args = tuple(args)
        self.cancelled = False
        self.daemon = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        pass

    def is_alive(self) -> bool:
        return not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True


@pytest.fixture
def fake_synth(monkeypatch):
    DummySynth.instances = []
    FakeTimer.created = []
    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: "font.sf2")
    monkeypatch.setitem(sys.modules, "fluidsynth", types.SimpleNamespace(Synth=DummySynth))
    monkeypatch.setattr(playback.threading, "Timer", FakeTimer)
    return DummySynth


def test_resolve_soundfont_env_variable(tmp_path, monkeypatch):
    """Environment variable ``SOUND_FONT`` overrides other locations."""
    sf = tmp_path / "custom.sf2"
    sf.write_text("soundfont")
    monkeypatch.setenv("SOUND_FONT", str(sf))

    result = _resolve_soundfont(None)

    assert Path(result) == sf


def test_resolve_soundfont_expands_user(tmp_path, monkeypatch):
    """``_resolve_soundfont`` should expand ``~`` in paths."""

    home = tmp_path / "home"
    home.mkdir()
    sf = home / "font.sf2"
    sf.write_text("soundfont")
    monkeypatch.setenv("HOME", str(home))

    result = _resolve_soundfont("~/font.sf2")

    assert Path(result) == sf


def test_resolve_soundfont_missing_file(monkeypatch):
    """Missing SoundFonts raise ``MidiPlaybackError``."""
    monkeypatch.setenv("SOUND_FONT", "/non/existent/path.sf2")

    with pytest.raises(MidiPlaybackError):
        _resolve_soundfont(None)


@pytest.mark.parametrize(
    "platform,expected",
    [
        ("win32", r"C:\\Windows\\System32\\drivers\\gm.dls"),
        ("darwin", "/Library/Audio/Sounds/Banks/FluidR3_GM.sf2"),
        ("linux", "/usr/share/sounds/sf2/TimGM6mb.sf2"),
    ],
)
def test_resolve_soundfont_platform_defaults(monkeypatch, platform, expected):
    """Ensure platform-specific fallback paths are respected."""

    monkeypatch.delenv("SOUND_FONT", raising=False)
    monkeypatch.setattr(playback.sys, "platform", platform, raising=False)
    monkeypatch.setattr(playback.os.path, "isfile", lambda path: path == expected)

    assert _resolve_soundfont(None) == expected


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1n", 2.0),
        ("4n", 0.5),
        ("8n", 0.25),
        ("4n.", 0.75),
        ("4t", 1 / 3),
        (1.5, 1.5),
        ("0.3", 0.3),
    ],
)
def test_note_value_seconds(value, expected):
    assert note_value_seconds(value, bpm=120) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["bogus", "0n", -1, "4x"])
def test_note_value_seconds_invalid(value):
    with pytest.raises(ValueError):
        note_value_seconds(value)


def test_note_value_seconds_requires_positive_bpm():
    with pytest.raises(ValueError):
        note_value_seconds("4n", bpm=0)


def test_player_initialize_is_idempotent(fake_synth):
    player = AudioPlayer(program=4)
    player.initialize()
    player.initialize()

    assert len(fake_synth.instances) == 1
    synth = fake_synth.instances[0]
    assert synth.calls[:3] == [
        ("start",),
        ("sfload", "font.sf2"),
        ("program_select", 0, 7, 0, 4),
    ]
    assert player.is_initialized


def test_player_ignores_requests_before_initialize(fake_synth):
    player = AudioPlayer()
    player.play_chord(["C", "E", "G"])
    player.play_melody([("C4", "4n", 0.0)])
    player.note_on("C4")
    assert fake_synth.instances == []
    assert FakeTimer.created == []


def test_play_chord_places_pitch_classes_in_octave_four(fake_synth):
    player = AudioPlayer(velocity=100)
    player.initialize()

    player.play_chord(["C", "E", "G5"], "2n")

    synth = fake_synth.instances[0]
    assert [c for c in synth.calls if c[0] == "noteon"] == [
        ("noteon", 0, 60, 100),
        ("noteon", 0, 64, 100),
        ("noteon", 0, 79, 100),
    ]
    assert {t.delay for t in FakeTimer.created} == {1.0}
    assert [t.args for t in FakeTimer.created] == [("C4",), ("E4",), ("G5",)]


def test_play_melody_schedules_on_and_off(fake_synth):
    player = AudioPlayer(bpm=120)
    player.initialize()

    player.play_melody([("C4", "4n", 0.0), ("E4", 0.25, 0.5)])

    scheduled = [(t.delay, t.func.__name__, t.args) for t in FakeTimer.created]
    assert scheduled == [
        (0.0, "note_on", ("C4",)),
        (0.5, "note_off", ("C4",)),
        (0.5, "note_on", ("E4",)),
        (0.75, "note_off", ("E4",)),
    ]


def test_stop_cancels_timers_and_silences(fake_synth):
    player = AudioPlayer()
    player.initialize()
    player.play_chord(["A4"], "1n")

    player.stop()

    synth = fake_synth.instances[0]
    assert all(t.cancelled for t in FakeTimer.created)
    assert ("noteoff", 0, 69) in synth.calls
    assert synth.calls[-1] == ("cc", 0, 123, 0)


def test_close_deletes_synth(fake_synth):
    player = AudioPlayer()
    player.initialize()
    player.close()
    assert fake_synth.instances[0].deleted
    assert not player.is_initialized


def test_initialize_driver_failure(monkeypatch):
    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: "font.sf2")
    monkeypatch.setitem(sys.modules, "fluidsynth", types.SimpleNamespace(Synth=FailStartSynth))
    DummySynth.instances = []

    player = AudioPlayer()
    with pytest.raises(MidiPlaybackError, match="no audio driver"):
        player.initialize()
    assert DummySynth.instances[0].deleted
    assert not player.is_initialized


def test_render_midi_invokes_subprocess(tmp_path, monkeypatch):
    """``render_midi_to_wav`` runs ``fluidsynth`` with expected arguments."""
    midi = tmp_path / "in.mid"
    wav = tmp_path / "out" / "out.wav"
    midi.write_text("midi")

    called = {}

    def fake_run(cmd, **kwargs):
        called["cmd"] = cmd
        called.update(kwargs)

    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: str(tmp_path / "font.sf2"))
    monkeypatch.setattr(subprocess, "run", fake_run)

    render_midi_to_wav(str(midi), str(wav))

    assert called["cmd"] == [
        "fluidsynth",
        "-ni",
        "-F",
        str(wav),
        str(tmp_path / "font.sf2"),
        str(midi),
    ]
    assert called["check"] is True
    # The destination directory is created before rendering.
    assert wav.parent.is_dir()


def test_render_midi_reports_stderr(tmp_path, monkeypatch):
    midi = tmp_path / "in.mid"
    midi.write_text("midi")
    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: "font.sf2")

    def fake_run(cmd, **_k):
        raise subprocess.CalledProcessError(1, cmd, stderr="bad soundfont\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(MidiPlaybackError, match="bad soundfont"):
        render_midi_to_wav(str(midi), str(tmp_path / "out.wav"))


def test_render_midi_missing_fluidsynth(monkeypatch, tmp_path):
    """Missing ``fluidsynth`` executable should yield a clear error message."""

    midi = tmp_path / "song.mid"
    midi.write_text("midi")
    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: "font.sf2")

    def fake_run(*_a, **_k):
        raise FileNotFoundError("fluidsynth")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(MidiPlaybackError, match="fluidsynth not installed"):
        render_midi_to_wav(str(midi), str(tmp_path / "out.wav"))


def test_render_midi_missing_file(tmp_path, monkeypatch):
    """``render_midi_to_wav`` should error when the MIDI file does not exist."""

    monkeypatch.setattr(playback, "_resolve_soundfont", lambda sf: "font.sf2")
    called = False

    def fake_run(*_a, **_k):
        nonlocal called
        called = True

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(MidiPlaybackError, match="MIDI file not found"):
        render_midi_to_wav("missing.mid", str(tmp_path / "song.wav"))

    assert not called


@pytest.mark.parametrize(
    "platform,expected_prefix",
    [
        ("win32", ["cmd", "/c", "start", "/wait", ""]),
        ("darwin", ["open", "-W"]),
        ("linux", ["xdg-open", "--wait"]),
    ],
)
def test_open_default_player_commands(monkeypatch, tmp_path, platform, expected_prefix):
    """Verify platform-specific commands used by ``open_default_player``."""

    midi = tmp_path / "x.mid"
    midi.write_text("data")

    calls = []

    def fake_run(cmd, **_k):
        calls.append(cmd)
        return types.SimpleNamespace(returncode=0, args=cmd, stderr="")

    monkeypatch.setattr(playback.subprocess, "run", fake_run)
    monkeypatch.delenv("MELODY_PLAYER", raising=False)
    monkeypatch.setattr(playback.sys, "platform", platform, raising=False)

    open_default_player(str(midi), delete_after=True)

    assert calls
    assert calls[0][: len(expected_prefix)] == expected_prefix
    assert calls[0][-1] == str(midi)
    assert not midi.exists()


def test_open_default_player_custom_command(monkeypatch, tmp_path):
    """``MELODY_PLAYER`` is split like a shell command line."""

    midi = tmp_path / "x.mid"
    midi.write_text("data")
    calls = []

    def fake_run(cmd, **_k):
        calls.append(cmd)
        return types.SimpleNamespace(returncode=0, args=cmd, stderr="")

    monkeypatch.setattr(playback.subprocess, "run", fake_run)
    monkeypatch.setenv("MELODY_PLAYER", '"/opt/my player/play" --quiet')
    monkeypatch.setattr(playback.sys, "platform", "linux", raising=False)

    open_default_player(str(midi))

    assert calls == [["/opt/my player/play", "--quiet", str(midi)]]
    assert midi.exists()


def test_open_default_player_failure(monkeypatch, tmp_path):
    midi = tmp_path / "x.mid"
    midi.write_text("data")

    monkeypatch.setattr(
        playback.subprocess,
        "run",
        lambda cmd, **_k: types.SimpleNamespace(returncode=3, args=cmd, stderr="no player"),
    )
    monkeypatch.setenv("MELODY_PLAYER", "missing-player")
    monkeypatch.setattr(playback.sys, "platform", "linux", raising=False)

    with pytest.raises(MidiPlaybackError, match="no player"):
        open_default_player(str(midi))


def test_open_default_player_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        open_default_player(str(tmp_path / "nope.mid"))
