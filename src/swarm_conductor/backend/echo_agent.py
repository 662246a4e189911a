"""Local deterministic execution engine for CLI backend integration tests."""

from __future__ import annotations

import argparse
import os
import sys


def main(argv: list[str] | None = None) -> int:
    """Echo the task; ``fail`` in the task text exits non-zero."""

    parser = argparse.ArgumentParser()
    parser.add_argument("task")
    parser.add_argument("--swarm-id", default=os.getenv("SWARM_CONDUCTOR_SWARM_ID", ""))
    parser.add_argument("--agents", type=int, default=int(os.getenv("SWARM_CONDUCTOR_AGENTS", "1")))
    args, _ = parser.parse_known_args(argv)

    if "fail" in args.task.lower():
        print(f"swarm {args.swarm_id}: task aborted: {args.task}", file=sys.stderr)
        return 1
    print(f"swarm {args.swarm_id} with {args.agents} agents")
    print(f"task completed with success: {args.task}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
