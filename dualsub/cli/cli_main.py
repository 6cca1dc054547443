"""
Command-line front end for dualsub.

    dualsub import chunk_info.json
    dualsub translate [--chunks chunk_info.json] [options]
    dualsub report
    dualsub export chunk_info.json
    dualsub set-key anthropic
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from dualsub.core.constants import (
    APP_NAME, APP_VERSION, DB_FILENAME, LOG_FILENAME, ChunkStatus, BackendName,
    ALL_POLICY_CHECKS,
)
from dualsub.core.config import AppConfig
from dualsub.core.db_sqlite import Database
from dualsub.core.backends import backend_from_config
from dualsub.core.orchestrator import run_translation
from dualsub.core.reporting import RunReport
from dualsub.core.security_utils import get_api_key, keychain_set_api_key
from dualsub.cli.cli_report import render_report

logger = logging.getLogger(APP_NAME)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_BACKENDS = (BackendName.ANTHROPIC, BackendName.GEMINI, BackendName.OPENAI)


def configure_logging(intermediate_dir: Path, level: str = "INFO"):
    """File log at DEBUG under the intermediate dir, console at ``level``."""
    intermediate_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(intermediate_dir / LOG_FILENAME, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.basicConfig(
        level=logging.DEBUG,
        format=LOG_FORMAT,
        handlers=[file_handler, console],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Translate transcript chunks into dual-language subtitle data with an LLM.",
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--config", type=Path, help="Config JSON (default ~/.config/dualsub/config.json)")
    parser.add_argument("--intermediate-dir", help="Directory for state, artifacts and logs")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Load a chunk_info.json list into the state store")
    p_import.add_argument("chunks", type=Path)

    p_export = sub.add_parser("export", help="Write the chunk list back out as JSON")
    p_export.add_argument("chunks", type=Path)

    p_report = sub.add_parser("report", help="Show the report of the last run")
    p_report.add_argument("--verbose", action="store_true", help="List warnings too")

    p_key = sub.add_parser("set-key", help="Store a backend API key in the macOS Keychain")
    p_key.add_argument("backend", choices=_BACKENDS)

    p_tr = sub.add_parser("translate", help="Run the translation orchestrator")
    p_tr.add_argument("--chunks", type=Path,
                      help="chunk_info.json to import before and write back after the run")
    p_tr.add_argument("--backend", choices=_BACKENDS)
    p_tr.add_argument("--model")
    p_tr.add_argument("--target-language", dest="target_languages", action="append",
                      help="Target language (repeatable; only the first is used per prompt)")
    p_tr.add_argument("--api-retries", type=int)
    p_tr.add_argument("--validation-retries", type=int)
    p_tr.add_argument("--max-concurrent", type=int)
    p_tr.add_argument("--force", action="store_true", default=None,
                      help="Reprocess chunks that are already completed")
    p_tr.add_argument("--no-timing-check", dest="timing_check", action="store_false", default=None)
    p_tr.add_argument("--part", dest="only_part", type=int, help="Only process this part number")
    p_tr.add_argument("--prompt-template", dest="prompt_template_path")
    p_tr.add_argument("--max-backoff", dest="max_backoff_sec", type=int)
    p_tr.add_argument("--timeout", dest="request_timeout_sec", type=int)
    p_tr.add_argument("--max-output-tokens", type=int)
    p_tr.add_argument("--temperature", type=float)
    p_tr.add_argument("--openai-base-url")
    p_tr.add_argument("--relaxed-tail-checks",
                      help=f"Comma list of checks relaxed on the last chunk's final attempt "
                           f"({', '.join(ALL_POLICY_CHECKS)}); empty string for none")
    p_tr.add_argument("--api-key", help="API key (otherwise env var, then Keychain)")
    p_tr.add_argument("--no-progress", action="store_true")
    p_tr.add_argument("--verbose", action="store_true", help="List warnings in the report")
    p_tr.add_argument("--save-config", action="store_true",
                      help="Persist the given options to the config file")
    return parser


_OVERRIDE_KEYS = (
    'backend', 'model', 'target_languages', 'api_retries', 'validation_retries',
    'max_concurrent', 'force', 'timing_check', 'only_part', 'prompt_template_path',
    'max_backoff_sec', 'request_timeout_sec', 'max_output_tokens', 'temperature',
    'openai_base_url', 'relaxed_tail_checks',
)


def _translate(args, config: AppConfig, db: Database) -> int:
    overrides = {key: getattr(args, key, None) for key in _OVERRIDE_KEYS}
    config.update(overrides, persist=args.save_config)

    if args.chunks:
        db.import_json(args.chunks)

    api_key = args.api_key or get_api_key(config.backend)
    if not api_key:
        logger.error("No API key for backend %s: pass --api-key, set the environment "
                     "variable, or run 'dualsub set-key %s'", config.backend, config.backend)
        return 2

    backend = backend_from_config(config.as_dict(), api_key)
    report = asyncio.run(run_translation(
        db, backend, config.as_dict(), show_progress=not args.no_progress))

    if args.chunks:
        db.export_json(args.chunks)

    render_report(report, sys.stdout, chunks=db.get_chunks(), verbose=args.verbose)
    return report.exit_code


def _report(args, db: Database) -> int:
    run = db.get_last_run()
    if run is None:
        print("No runs recorded yet.")
        return 0
    chunks = db.get_chunks()
    report = RunReport(
        model=run.get('model') or "",
        succeeded=[c.part_number for c in chunks if c.status == ChunkStatus.COMPLETED],
        failed=[c.part_number for c in chunks if c.status == ChunkStatus.FAILED],
        issues=db.get_run_issues(run['id']),
        input_tokens=run.get('input_tokens') or 0,
        output_tokens=run.get('output_tokens') or 0,
        estimated_cost=run.get('estimated_cost') or 0.0,
        run_id=run['id'],
    )
    render_report(report, sys.stdout, chunks=chunks, verbose=args.verbose)
    return report.exit_code


def _set_key(args) -> int:
    key = getpass.getpass(f"{args.backend} API key: ").strip()
    if not key:
        print("No key entered.", file=sys.stderr)
        return 2
    if not keychain_set_api_key(args.backend, key):
        print("Could not store the key in the Keychain.", file=sys.stderr)
        return 1
    print(f"Stored {args.backend} API key in the Keychain.")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AppConfig(args.config)
    if args.intermediate_dir:
        config.update({'intermediate_dir': args.intermediate_dir})

    configure_logging(config.intermediate_dir, args.log_level)
    logger.debug("%s %s starting: %s", APP_NAME, APP_VERSION, args.command)

    if args.command == "set-key":
        return _set_key(args)

    db = Database(config.intermediate_dir / DB_FILENAME)
    try:
        if args.command == "import":
            chunks = db.import_json(args.chunks)
            print(f"Imported {len(chunks)} chunks.")
            return 0
        if args.command == "export":
            count = db.export_json(args.chunks)
            print(f"Exported {count} chunks to {args.chunks}.")
            return 0
        if args.command == "report":
            return _report(args, db)
        return _translate(args, config, db)
    except (OSError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 2
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
