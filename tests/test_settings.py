"""Tests for loading and saving the JSON settings file."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from melody_composer import load_settings, save_settings  # noqa: E402


def test_round_trip(tmp_path):
    path = tmp_path / "prefs" / "settings.json"
    save_settings({"mode": "lydian", "bars": 8}, path)

    assert json.loads(path.read_text()) == {"mode": "lydian", "bars": 8}
    assert load_settings(path) == {"mode": "lydian", "bars": 8}


def test_missing_file_returns_empty(tmp_path):
    assert load_settings(tmp_path / "absent.json") == {}


def test_corrupt_file_is_ignored(tmp_path, caplog):
    path = tmp_path / "settings.json"
    path.write_text("{not json")

    assert load_settings(path) == {}
    assert "Could not load settings" in caplog.text


def test_non_object_is_ignored(tmp_path, caplog):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2]")

    assert load_settings(path) == {}
    assert "expected a JSON object" in caplog.text
