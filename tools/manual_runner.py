"""Utility for manually running a source file through the sandbox.

It builds the configured sandbox backend directly, so the raw result
(status, stdout, stderr, exit code, time, memory) is printed without the
verdict classification that :class:`runner.submission.SubmissionRunner`
performs.

Example::

    python tools/manual_runner.py \
        --source main.c \
        --lang c \
        --stdin 0000.in \
        --time-limit 1000 \
        --mem-limit 262144

Add ``--no-run`` when you only care about the compile result.
"""

from __future__ import annotations

import argparse
import json
import shutil
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

from dispatcher import config as dispatcher_config
from dispatcher.factory import build_sandbox


def run_sandbox(
    *,
    source: Path,
    lang: str,
    stdin: str,
    time_limit: int,
    mem_limit: int,
    run: bool,
    config: Dict[str, Any],
    sandbox=None,
) -> Dict[str, Any]:
    """Compile (when the language needs it) and run `source` once."""

    profile = config["languages"].get(lang)
    if profile is None:
        raise ValueError(f"unknown language: {lang}")
    sandbox = sandbox or build_sandbox(config)
    ret: Dict[str, Any] = {}
    build_dir = Path(tempfile.mkdtemp(prefix="manual-"))
    try:
        shutil.copy(source, build_dir / profile["source"])
        if profile.get("compile"):
            result = sandbox.compile(
                profile["compile"],
                build_dir,
                image=profile.get("image"),
            )
            ret["compile"] = asdict(result)
            if result.exit_code != 0:
                return ret
        if run:
            result = sandbox.run(
                profile["run"],
                build_dir,
                stdin,
                time_limit,
                mem_limit,
                image=profile.get("image"),
            )
            ret["run"] = asdict(result)
    finally:
        shutil.rmtree(build_dir, ignore_errors=True)
    return ret


def parse_args(argv=None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--source",
        required=True,
        type=Path,
        help="source file to run",
    )
    parser.add_argument(
        "--lang",
        default="c",
        help="language key of the submission config",
    )
    parser.add_argument(
        "--stdin",
        type=Path,
        help="path to testcase input file (omit for empty stdin)",
    )
    parser.add_argument(
        "--time-limit",
        type=int,
        default=1000,
        help="time limit in milliseconds",
    )
    parser.add_argument(
        "--mem-limit",
        type=int,
        default=262144,
        help="memory limit in kilobytes",
    )
    parser.add_argument(
        "--run",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="execute the program after compilation (default: true)",
    )
    parser.add_argument(
        "--config",
        default=None,
        type=Path,
        help="path to submission configuration file",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """CLI entry point."""

    args = parse_args(argv)
    config = dispatcher_config.get_submission_config(args.config)
    result = run_sandbox(
        source=args.source,
        lang=args.lang,
        stdin=args.stdin.read_text() if args.stdin else "",
        time_limit=args.time_limit,
        mem_limit=args.mem_limit,
        run=args.run,
        config=config,
    )
    print(json.dumps(result, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
