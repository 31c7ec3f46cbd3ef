"""Local demo agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, optionally sleeping or failing on request."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail-marker", default="")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.sleep > 0:
        time.sleep(args.sleep)

    task_id = os.getenv("LOOPWORK_TASK_ID", "")
    sys.stdout.write(f"echo_agent task={task_id}\n{prompt.strip()}\n")
    if args.fail_marker and args.fail_marker in prompt:
        sys.stderr.write(f"fail marker {args.fail_marker!r} found in prompt\n")
        return 1
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
