"""Deterministic stand-in agent for CLI backend integration tests.

Invoked through the real subprocess path, e.g.
``python -m backlog_runner.orchestrator.backend.echo_agent --touch out.txt --ac AC-1``.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Read the prompt from stdin, emit markers and a result object."""

    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--mode",
        choices=("done", "blocked", "fail", "quota", "hang", "no-json"),
        default="done",
    )
    parser.add_argument("--touch", action="append", default=[])
    parser.add_argument("--ac", action="append", default=[])
    parser.add_argument("--progress", action="append", default=[])
    parser.add_argument("--model", default="")
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()

    for text in args.progress:
        print(f"[PROGRESS] {text}", flush=True)
    for ref in args.ac:
        print(f"[AC_COMPLETE] {ref}", flush=True)

    if args.mode == "fail":
        print("fatal: agent crashed", file=sys.stderr, flush=True)
        return 2
    if args.mode == "quota":
        print(
            "You've hit your limit · resets 3pm (Europe/Berlin)",
            file=sys.stderr,
            flush=True,
        )
        return 1
    if args.mode == "hang":
        time.sleep(3600)
        return 0
    if args.sleep:
        time.sleep(args.sleep)

    for name in args.touch:
        path = Path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{os.getenv('BACKLOG_RUNNER_TASK_ID', '')}\n", "utf-8")

    if args.mode == "no-json":
        print("finished without a result object", flush=True)
        return 0

    payload = {
        "status": args.mode,
        "summary": f"echo agent processed {len(prompt)} prompt chars",
        "notes": f"model={args.model}" if args.model else "",
        "files": list(args.touch),
        "tests": "",
        "completed_acs": list(args.ac),
    }
    print(json.dumps(payload), flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
