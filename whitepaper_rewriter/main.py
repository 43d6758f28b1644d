from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Sequence

from dotenv import load_dotenv
from pydantic import ValidationError

from .config import AppConfig, RevisionConfig, load_config
from .errors import EmptySheetError, InvalidInputError
from .google_sheets import GoogleSheetsClient
from .llm_client import LLMClient
from .models import LogType, RevisedGrid, RevisionLogEntry
from .orchestrator import run_revision
from .revision_log import LogSink, RevisionLog
from .rewriter import BackendRewriter, LLMRewriter, RewriteCollaborator
from .versions import next_version_name, resolve_source_sheet


def _load_env_files(config_path: Path) -> None:
    """Load environment variables from .env files."""

    # Load default .env in current working directory if present
    load_dotenv(override=False)

    # Load .env placed next to the config file if it exists
    config_env = config_path.parent / ".env"
    if config_env.exists():
        load_dotenv(dotenv_path=config_env, override=False)


LOGGER = logging.getLogger("whitepaper_rewriter")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rewrite commented whitepaper plan rows into the next VERn sheet"
    )
    parser.add_argument("--config", required=True, help="Path to the YAML configuration file")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not write to Google Sheets; print the revised grid and log to stdout instead",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of commented rows sent per rewrite call",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Override the number of batches processed concurrently",
    )
    parser.add_argument(
        "--source-sheet",
        default=None,
        help="Revise this tab instead of the automatically detected latest version",
    )
    parser.add_argument(
        "--show-log",
        action="store_true",
        help="Print the revision log tab and exit",
    )
    return parser.parse_args(argv)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    revision_updates: Dict[str, Any] = {}
    if args.batch_size is not None:
        revision_updates["batch_size"] = args.batch_size
    if args.max_workers is not None:
        revision_updates["max_workers"] = args.max_workers
    if revision_updates:
        try:
            revision = RevisionConfig.model_validate(
                {**config.revision.model_dump(), **revision_updates}
            )
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid command line override: {exc}") from exc
        config = config.model_copy(update={"revision": revision})
    if args.source_sheet:
        config = config.model_copy(
            update={"sheets": config.sheets.model_copy(update={"source_sheet_name": args.source_sheet})}
        )
    return config


def _build_rewriter(config: AppConfig) -> RewriteCollaborator:
    if config.rewriter == "backend":
        return BackendRewriter(config.backend)
    return LLMRewriter(LLMClient(config.llm))


def _sheet_log_sink(sheets_client: GoogleSheetsClient) -> LogSink:
    def _sink(entry: RevisionLogEntry) -> None:
        sheets_client.append_log_rows([entry.to_row()])

    return _sink


def _resolve_source(config: AppConfig, titles: Sequence[str]) -> str:
    override = config.sheets.source_sheet_name
    if override:
        if override not in titles:
            raise InvalidInputError(f"Sheet '{override}' does not exist in the spreadsheet")
        return override
    if not titles:
        raise EmptySheetError("Spreadsheet has no sheets")
    # The API has no notion of an active tab; the first tab stands in for it.
    return resolve_source_sheet(
        titles,
        titles[0],
        default_sheet_name=config.sheets.default_sheet_name,
        log_sheet_name=config.sheets.log_sheet_name,
    )


def _dry_run_output(
    source: str,
    target: str,
    result: RevisedGrid,
    revision_log: RevisionLog,
) -> Dict[str, Any]:
    return {
        "sourceSheet": source,
        "targetSheet": target,
        "rows": result.rows,
        "highlights": [
            {
                "row": row,
                "column": column,
                "spans": [[span.start, span.end] for span in spans],
            }
            for (row, column), spans in sorted(result.highlights.items())
        ],
        "summary": result.summary.to_dict(),
        "log": [entry.to_dict() for entry in revision_log.entries()],
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config_path = Path(args.config).expanduser().resolve()
    _load_env_files(config_path)
    try:
        config = _apply_overrides(load_config(config_path), args)
    except InvalidInputError as exc:
        LOGGER.error("%s", exc)
        return 1
    sheets_client = GoogleSheetsClient(config.sheets)

    if args.show_log:
        rows = sheets_client.fetch_log_rows()
        if not rows:
            LOGGER.info("No revision log yet; run a rewrite first")
            return 0
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return 0

    sinks = [] if args.dry_run else [_sheet_log_sink(sheets_client)]
    revision_log = RevisionLog(sinks)
    revision_log.record(LogType.INFO, "START", "Starting rewrite process")

    rewriter: RewriteCollaborator | None = None
    try:
        titles = sheets_client.list_sheet_titles()
        source = _resolve_source(config, titles)
        revision_log.record(LogType.INFO, "DETECTED", f"Source sheet: {source}")
        LOGGER.info("Fetching rows from '%s'...", source)
        grid = sheets_client.fetch_grid(source)

        rewriter = _build_rewriter(config)
        result = run_revision(
            grid,
            rewriter,
            revision_log,
            batch_size=config.revision.batch_size,
            max_workers=config.revision.max_workers,
            diff_mode=config.revision.diff_mode,
            max_diff_chars=config.revision.max_diff_chars,
            run_timeout=config.revision.run_timeout,
        )
    except (EmptySheetError, InvalidInputError) as exc:
        LOGGER.error("Rewrite aborted: %s", exc)
        revision_log.record(
            LogType.ERROR,
            "FATAL",
            f"Fatal error: {exc}",
            detail={"error": type(exc).__name__},
        )
        return 1
    finally:
        if isinstance(rewriter, BackendRewriter):
            rewriter.close()

    target = next_version_name(source)
    summary = result.summary

    if args.dry_run:
        LOGGER.info("Dry run enabled; writing results to stdout")
        print(
            json.dumps(
                _dry_run_output(source, target, result, revision_log),
                ensure_ascii=False,
                indent=2,
            )
        )
        return 0

    created = sheets_client.write_grid(
        target,
        result.rows,
        result.highlights,
        config.revision.highlight_color,
    )
    revision_log.record(
        LogType.INFO,
        "CREATED" if created else "CLEARED",
        f"{'New sheet' if created else 'Existing sheet'} {target} written",
        detail={"rows": len(result.rows) - 1, "columns": len(result.header)},
    )
    print(
        f"Rewrite completed. Processed: {summary.commented_rows} "
        f"Revised: {summary.revised_rows} Unchanged: {summary.fallback_rows} "
        f"New sheet: {target}"
    )
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
