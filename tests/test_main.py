"""Tests for the command line entry point."""

from __future__ import annotations

import json
from pathlib import Path
from textwrap import dedent
from typing import List
from unittest.mock import MagicMock

import pytest

from whitepaper_rewriter import main as cli

CONFIG = dedent(
    """
    sheets:
      credentials_file: creds.json
      spreadsheet_id: sheet-123
    llm:
      providers:
        1:
          model: gpt-4.1-mini
          api_key: test-key
    revision:
      batch_size: 2
    """
)

GRID = [
    ["No", "Title", "Comment"],
    ["1", "Draft A", ""],
    ["2", "Draft B", "make punchier"],
]


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def sheets(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    client = MagicMock()
    client.list_sheet_titles.return_value = ["Whitepaper Plans", "VER1", "Backlog"]
    client.fetch_grid.return_value = [list(row) for row in GRID]
    client.write_grid.return_value = True
    monkeypatch.setattr(cli, "GoogleSheetsClient", MagicMock(return_value=client))
    return client


@pytest.fixture
def rewriter(monkeypatch: pytest.MonkeyPatch, rewriter_factory, appender):
    fake = rewriter_factory(appender("Title", "!!"))
    monkeypatch.setattr(cli, "_build_rewriter", lambda config: fake)
    return fake


def _logged_statuses(sheets: MagicMock) -> List[str]:
    return [call.args[0][0][3] for call in sheets.append_log_rows.call_args_list]


class TestMain:
    def test_writes_next_version(self, config_path: Path, sheets: MagicMock, rewriter, capsys) -> None:
        """The latest VERn is revised into VER(n+1)."""
        assert cli.main(["--config", str(config_path)]) == 0

        sheets.fetch_grid.assert_called_once_with("VER1")
        title, rows, highlights, color = sheets.write_grid.call_args.args
        assert title == "VER2"
        assert rows[2] == ["2", "Draft B!!", "make punchier"]
        assert list(highlights) == [(2, 1)]
        assert color == "#FF0000"

        assert _logged_statuses(sheets) == [
            "START",
            "DETECTED",
            "COLLECTED",
            "SENDING",
            "SUCCESS",
            "COMPLETED",
            "CREATED",
        ]
        out = capsys.readouterr().out
        assert "Processed: 1" in out
        assert "New sheet: VER2" in out

    def test_dry_run_prints_result(self, config_path: Path, sheets: MagicMock, rewriter, capsys) -> None:
        """Dry runs write nothing to the spreadsheet."""
        assert cli.main(["--config", str(config_path), "--dry-run"]) == 0

        sheets.write_grid.assert_not_called()
        sheets.append_log_rows.assert_not_called()

        output = json.loads(capsys.readouterr().out)
        assert output["sourceSheet"] == "VER1"
        assert output["targetSheet"] == "VER2"
        assert output["rows"][2][1] == "Draft B!!"
        assert output["highlights"] == [{"row": 2, "column": 1, "spans": [[7, 9]]}]
        assert output["summary"]["revisedRows"] == 1
        assert [entry["type"] for entry in output["log"]].count("API_REQUEST") == 1

    def test_cli_overrides(self, config_path: Path, sheets: MagicMock, rewriter) -> None:
        sheets.list_sheet_titles.return_value = ["Whitepaper Plans", "VER1", "Drafts"]
        args = ["--config", str(config_path), "--source-sheet", "Drafts", "--batch-size", "1"]

        assert cli.main(args) == 0
        sheets.fetch_grid.assert_called_once_with("Drafts")
        assert sheets.write_grid.call_args.args[0] == "VER2"

    @pytest.mark.parametrize(
        "override",
        [["--max-workers", "50"], ["--max-workers", "0"], ["--batch-size", "0"]],
    )
    def test_invalid_overrides_are_rejected(
        self, override: List[str], config_path: Path, sheets: MagicMock, rewriter
    ) -> None:
        """Command line overrides obey the same limits as the config file."""
        assert cli.main(["--config", str(config_path), *override]) == 1

        cli.GoogleSheetsClient.assert_not_called()
        assert rewriter.calls == []

    def test_empty_sheet_is_fatal(self, config_path: Path, sheets: MagicMock, rewriter) -> None:
        """A header-only sheet aborts with exit code 1 and a FATAL entry."""
        sheets.fetch_grid.return_value = [["No", "Title", "Comment"]]

        assert cli.main(["--config", str(config_path)]) == 1

        sheets.write_grid.assert_not_called()
        assert rewriter.calls == []
        assert _logged_statuses(sheets)[-1] == "FATAL"

    def test_unknown_source_sheet(self, config_path: Path, sheets: MagicMock, rewriter) -> None:
        args = ["--config", str(config_path), "--source-sheet", "Missing"]
        assert cli.main(args) == 1
        sheets.fetch_grid.assert_not_called()

    def test_show_log(self, config_path: Path, sheets: MagicMock, capsys) -> None:
        sheets.fetch_log_rows.return_value = [["Timestamp", "Type"], ["2025-03-14 09:26:53", "INFO"]]

        assert cli.main(["--config", str(config_path), "--show-log"]) == 0

        assert json.loads(capsys.readouterr().out)[1] == ["2025-03-14 09:26:53", "INFO"]
        sheets.list_sheet_titles.assert_not_called()

    def test_run_exit_code_on_interrupt(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def interrupted() -> int:
            raise KeyboardInterrupt

        monkeypatch.setattr(cli, "main", interrupted)
        with pytest.raises(SystemExit) as excinfo:
            cli.run()
        assert excinfo.value.code == 130
