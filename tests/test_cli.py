"""Tests for the page-changes command line interface."""

import json
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from page_changes.cli.main import main
from page_changes.core.storage import encode_change_set_id


@pytest.fixture
def temp_home():
    """Create a temporary home with a one-page workspace."""
    with tempfile.TemporaryDirectory() as temp_dir:
        home = Path(temp_dir)
        (home / "pages").mkdir()
        (home / "pages" / "notes.md").write_text("hello\n")
        yield home


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, home: Path, *args, input=None):
    return runner.invoke(main, ["--home", str(home), *args], input=input)


def record_run(runner, home: Path):
    """Drive one run through the CLI: start, edit notes.md, end."""
    result = invoke(runner, home, "run", "start", "main", "r1")
    assert result.exit_code == 0, result.output
    (home / "pages" / "notes.md").write_text("hello\nworld\n")
    result = invoke(runner, home, "record", "main", "r1", "notes.md", "file-changed")
    assert result.exit_code == 0, result.output
    result = invoke(runner, home, "run", "end", "main", "r1")
    assert result.exit_code == 0, result.output
    return result


class TestRunCommands:
    """Recording runs from the command line."""

    def test_run_and_record_report_stats(self, runner, temp_home):
        result = record_run(runner, temp_home)

        assert "Completed run r1" in result.output
        assert "+1 -0" in result.output

    def test_record_rejects_invalid_path(self, runner, temp_home):
        result = invoke(runner, temp_home, "record", "main", "r1", "../escape.md", "file-changed")

        assert result.exit_code != 0
        assert "Invalid path" in result.output

    def test_end_of_unknown_run(self, runner, temp_home):
        result = invoke(runner, temp_home, "run", "end", "main", "nope")

        assert result.exit_code == 0
        assert "No change set for run nope" in result.output

    def test_hook_processes_jsonl_stdin(self, runner, temp_home):
        events = [
            {"phase": "start", "sessionKey": "main", "runId": "r1"},
            {"type": "file-added", "sessionKey": "main", "runId": "r1", "path": "todo.md"},
            {"phase": "end", "sessionKey": "main", "runId": "r1"},
        ]
        stdin = "".join(json.dumps(event) + "\n" for event in events)

        result = invoke(runner, temp_home, "hook", input=stdin)

        assert result.exit_code == 0
        responses = [json.loads(line) for line in result.output.splitlines() if line.strip()]
        assert [r["ok"] for r in responses] == [True, True, True]
        assert responses[2]["changeSet"]["status"] == "completed"
        assert (temp_home / "debug.log").exists()


class TestReviewCommands:
    """Listing, inspecting, reverting and pruning change sets."""

    def test_list_without_change_sets(self, runner, temp_home):
        result = invoke(runner, temp_home, "list", "main")

        assert result.exit_code == 0
        assert "No change sets found" in result.output

    def test_list_shows_runs(self, runner, temp_home):
        record_run(runner, temp_home)

        result = invoke(runner, temp_home, "list", "main")

        assert result.exit_code == 0
        assert "r1" in result.output
        assert "+1 -0" in result.output

    def test_show_with_diff(self, runner, temp_home):
        record_run(runner, temp_home)

        result = invoke(runner, temp_home, "show", encode_change_set_id("main", "r1"), "--diff")

        assert result.exit_code == 0
        assert "notes.md" in result.output
        assert "+world" in result.output

    def test_show_invalid_id(self, runner, temp_home):
        result = invoke(runner, temp_home, "show", "%%%")

        assert result.exit_code != 0
        assert "Invalid change set id" in result.output

    def test_revert_file(self, runner, temp_home):
        record_run(runner, temp_home)

        result = invoke(
            runner,
            temp_home,
            "revert",
            encode_change_set_id("main", "r1"),
            "--mode",
            "file",
            "--path",
            "notes.md",
        )

        assert result.exit_code == 0, result.output
        assert "Reverted file" in result.output
        assert (temp_home / "pages" / "notes.md").read_text() == "hello\n"

    def test_revert_all_prints_redo_hint(self, runner, temp_home):
        record_run(runner, temp_home)

        result = invoke(runner, temp_home, "revert", encode_change_set_id("main", "r1"))

        assert result.exit_code == 0, result.output
        assert "Redo with" in result.output

    def test_revert_hunk_requires_hunk_id(self, runner, temp_home):
        result = invoke(
            runner,
            temp_home,
            "revert",
            encode_change_set_id("main", "r1"),
            "--mode",
            "hunk",
            "--path",
            "notes.md",
        )

        assert result.exit_code != 0
        assert "--hunk-id is required" in result.output

    def test_revert_missing_change_set(self, runner, temp_home):
        result = invoke(runner, temp_home, "revert", encode_change_set_id("main", "nope"))

        assert result.exit_code != 0
        assert "Change set not found" in result.output

    def test_prune_reports_count(self, runner, temp_home):
        record_run(runner, temp_home)

        result = invoke(runner, temp_home, "prune")

        assert result.exit_code == 0
        assert "Removed 0 change sets older than 30 days" in result.output


def test_bad_config_file_aborts(runner, temp_home):
    (temp_home / "config.json").write_text("{broken")

    result = invoke(runner, temp_home, "list", "main")

    assert result.exit_code != 0
    assert "Could not read" in result.output
