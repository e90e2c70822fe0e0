"""Tests for configuration loading."""

import json
import tempfile
from pathlib import Path

import pytest

from page_changes.core.config import load_config


@pytest.fixture
def temp_home():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


def test_defaults_without_config_file(temp_home):
    config = load_config(temp_home)

    assert config.home == temp_home
    assert config.pages_dir == temp_home / "pages"
    assert config.changes_dir == temp_home / "changes"
    assert config.retention_days == 30
    assert config.max_file_size == 1_000_000
    assert config.context_lines == 4


def test_config_file_overrides_defaults(temp_home):
    (temp_home / "config.json").write_text(
        json.dumps({"retention_days": 7, "max_file_size": 512, "home": "/elsewhere"})
    )

    config = load_config(temp_home)

    assert config.retention_days == 7
    assert config.max_file_size == 512
    assert config.home == temp_home


def test_home_from_environment(temp_home, monkeypatch):
    monkeypatch.setenv("PAGE_CHANGES_HOME", str(temp_home))

    assert load_config().home == temp_home


@pytest.mark.parametrize("contents", ["{oops", "[1, 2]", '{"retention_days": "soon"}'])
def test_invalid_config_file_raises(temp_home, contents):
    (temp_home / "config.json").write_text(contents)

    with pytest.raises(ValueError):
        load_config(temp_home)
