"""
test_config.py — config.json bootstrap from config.dist.json and validation.
"""

import json
import os
import sys
import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from results.config import Settings, load_config


def _dir_with_dist(data: dict) -> Path:
    d = Path(tempfile.mkdtemp())
    (d / "config.dist.json").write_text(json.dumps(data), encoding="utf-8")
    return d


def test_missing_config_is_copied_from_dist():
    d = _dir_with_dist({"poll_interval": 30, "log_level": "DEBUG"})

    settings = load_config(d / "config.json")

    assert (d / "config.json").exists()
    assert settings.poll_interval == 30
    assert settings.log_level == "DEBUG"
    assert settings.db_path is None


def test_existing_config_wins_over_dist():
    d = _dir_with_dist({"poll_interval": 30})
    (d / "config.json").write_text(json.dumps({"poll_interval": 5}), encoding="utf-8")

    assert load_config(d / "config.json").poll_interval == 5


def test_no_config_at_all():
    d = Path(tempfile.mkdtemp())
    with pytest.raises(FileNotFoundError):
        load_config(d / "config.json")


def test_invalid_interval_is_rejected():
    d = _dir_with_dist({"poll_interval": 0})
    with pytest.raises(ValidationError):
        load_config(d / "config.json")


def test_shipped_dist_file_is_valid():
    dist = Path(__file__).parent.parent / "config.dist.json"
    data = json.loads(dist.read_text(encoding="utf-8"))
    settings = Settings(**data)
    assert settings == Settings()
