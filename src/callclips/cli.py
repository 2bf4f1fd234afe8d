from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .cleanup import cleanup_recordings
from .config import ConfigError, load_config, with_overrides
from .doctor import run_doctor
from .logging_config import setup_logging, setup_worker_logging
from .secrets import delete_secret, store_secret
from .state import StateLock, StateLockedError, StateStore, StateWriteError
from .workflow import build_worker

logger = logging.getLogger(__name__)

SECRET_NAMES = ("telegram_token", "openai_api_key")


def _load_config_or_exit(args: argparse.Namespace):
    try:
        return load_config(getattr(args, "config", None))
    except (ConfigError, FileNotFoundError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)


def cmd_run(args: argparse.Namespace) -> None:
    cfg = _load_config_or_exit(args)
    setup_worker_logging(cfg, verbose=args.verbose, log_file=args.log_file)
    if args.once:
        cfg = with_overrides(cfg, run_once=True)

    try:
        with StateLock(cfg.state_file):
            worker = build_worker(cfg)
            worker.run_forever()
    except StateLockedError as e:
        logger.error("%s", e)
        sys.exit(1)
    except StateWriteError as e:
        logger.critical("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


def cmd_status(args: argparse.Namespace) -> None:
    state_path = args.state
    if state_path is None:
        state_path = _load_config_or_exit(args).state_file
    store = StateStore(state_path)
    pending = store.get_pending()
    payload = {
        "state_file": str(store.path),
        "destination": store.destination,
        "watermark": store.watermark,
        "completed": len(store.completed_keys()),
        "pending": pending.to_dict() if pending is not None else None,
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def cmd_cleanup(args: argparse.Namespace) -> None:
    setup_logging(logging.INFO)
    if args.days < 0:
        print("Error: --days must be >= 0", file=sys.stderr)
        sys.exit(1)
    state_path, recordings = args.state, args.recordings
    if state_path is None or recordings is None:
        cfg = _load_config_or_exit(args)
        state_path = state_path or cfg.state_file
        recordings = recordings or cfg.recordings_dir
    if not Path(state_path).is_file():
        print(f"Error: state file not found: {state_path}", file=sys.stderr)
        sys.exit(1)
    if not Path(recordings).is_dir():
        print(f"Error: recordings root not found: {recordings}", file=sys.stderr)
        sys.exit(1)

    print("Cleanup completed recordings")
    print(f"Mode: {'APPLY' if args.apply else 'DRY-RUN'}")
    print(f"State file: {state_path}")
    print(f"Recordings root: {recordings}")
    print(f"Delete completed older than {args.days} day(s)\n")

    summary = cleanup_recordings(
        StateStore(Path(state_path)),
        Path(recordings),
        days=args.days,
        apply=args.apply,
        prune=args.prune_empty_dirs,
    )
    print("\nSummary:")
    for line in summary.lines(applied=args.apply, pruned=args.prune_empty_dirs):
        print(line)
    if args.apply and summary.failed_deletes > 0:
        sys.exit(1)


def cmd_doctor(args: argparse.Namespace) -> None:
    cfg = None
    if args.with_config:
        cfg = _load_config_or_exit(args)
    rep = run_doctor(cfg)
    print("callclips doctor\n")
    for name, data in rep.checks.items():
        print(f"- {name}:")
        for k, v in data.items():
            print(f"    {k}: {v}")
    print("\nOK" if rep.ok else "\nNOT OK (fix missing requirements above)")
    if not rep.ok:
        sys.exit(1)


def cmd_secret_set(args: argparse.Namespace) -> None:
    value = getpass.getpass(f"{args.name}: ")
    if not value.strip():
        print("Empty value, nothing stored.", file=sys.stderr)
        sys.exit(1)
    store_secret(args.name, value.strip())
    print(f"Stored {args.name} in keyring.")


def cmd_secret_delete(args: argparse.Namespace) -> None:
    delete_secret(args.name)
    print(f"Deleted {args.name} from keyring.")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="callclips", description="Call recording tagging worker")
    sub = parser.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Run the worker loop.")
    r.add_argument("--config", type=Path, default=None, help="YAML file overriding environment settings.")
    r.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    r.add_argument("--log-file", type=Path, default=None)
    r.add_argument("--verbose", "-v", action="store_true")
    r.set_defaults(func=cmd_run)

    s = sub.add_parser("status", help="Show pending item and completed count.")
    s.add_argument("--config", type=Path, default=None)
    s.add_argument("--state", type=Path, default=None, help="State file (default: from config).")
    s.set_defaults(func=cmd_status)

    c = sub.add_parser("cleanup", help="Delete recordings completed more than N days ago.")
    c.add_argument("--config", type=Path, default=None)
    c.add_argument("--state", type=Path, default=None)
    c.add_argument("--recordings", type=Path, default=None)
    c.add_argument("--days", type=int, default=14)
    c.add_argument("--apply", action="store_true", help="Actually delete files (default is a dry run).")
    c.add_argument("--prune-empty-dirs", action="store_true")
    c.set_defaults(func=cmd_cleanup)

    d = sub.add_parser("doctor", help="Check local system dependencies (ffmpeg, openai).")
    d.add_argument("--config", type=Path, default=None)
    d.add_argument("--with-config", action="store_true", help="Also validate configured paths.")
    d.set_defaults(func=cmd_doctor)

    secret = sub.add_parser("secret", help="Manage tokens stored in the system keyring.")
    secret_sub = secret.add_subparsers(dest="secret_cmd", required=True)

    secret_set = secret_sub.add_parser("set", help="Store a token (prompted without echo).")
    secret_set.add_argument("name", choices=SECRET_NAMES)
    secret_set.set_defaults(func=cmd_secret_set)

    secret_delete = secret_sub.add_parser("delete", help="Remove a stored token.")
    secret_delete.add_argument("name", choices=SECRET_NAMES)
    secret_delete.set_defaults(func=cmd_secret_delete)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
