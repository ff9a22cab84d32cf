#!/usr/bin/env python3

import argparse
import asyncio
import json
import os
import sys
import traceback

from replay_config import RunConfig
from replay_errors import ReplayError
from runner import run_replay


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spec-replay",
        description="Replay a JSON spec against a live app and verify network and DB outcomes",
    )
    parser.add_argument("spec", nargs="?", help="Path to the root spec JSON (falls back to REPLAY_SPEC)")
    parser.add_argument("--headful", action="store_true", help="Run browser headful for debugging")
    parser.add_argument("--mobile", action="store_true", help="Force mobile device emulation")
    parser.add_argument("--artifacts-dir", help="Directory for diagnostic artifacts")
    parser.add_argument("--allow-eval", action="store_true", help="Allow ui.eval steps to run scripts in the page")
    parser.add_argument("--verbose", action="store_true", help="Print step logs to stderr")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    spec_path = args.spec or os.environ.get("REPLAY_SPEC")
    if not spec_path:
        parser.print_help()
        return 0

    config = RunConfig.from_env(
        spec_path,
        artifacts_dir=args.artifacts_dir,
        headless=False if args.headful else None,
        force_mobile=True if args.mobile else None,
        allow_eval=True if args.allow_eval else None,
        verbose=True if args.verbose else None,
    )
    if config.verbose:
        print(f"🏃 Replaying {config.spec_path} (artifacts: {config.artifacts_dir})", file=sys.stderr)

    try:
        report = asyncio.run(run_replay(config))
    except ReplayError as e:
        print(f"✖ Replay failed: {e}", file=sys.stderr)
        if config.verbose:
            traceback.print_exc()
        return 1
    except Exception as e:
        print(f"✖ Replay failed: {type(e).__name__}: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1

    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
