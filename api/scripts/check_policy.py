"""Fail if a rate limit policy file does not validate."""

from __future__ import annotations

import argparse
import sys

from gamegate.config import settings
from gamegate.ratelimit.errors import PolicyError
from gamegate.ratelimit.policy import load_policy_file


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Validate a rate limit policy file")
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Policy file to check (default: POLICY_FILE from the environment)",
    )
    args = parser.parse_args(argv)

    path = args.path or settings.policy_file
    if not path:
        print("No policy file given and POLICY_FILE is not set.", file=sys.stderr)
        return 2

    try:
        table = load_policy_file(path)
    except PolicyError as exc:
        print(f"Policy check failed: {exc}", file=sys.stderr)
        return 1

    print(f"{path}: OK")
    for endpoint_class, limit in sorted(table.limits.items(), key=lambda item: item[0].value):
        print(f"  {endpoint_class.value:<12} {limit.max:>5} per {limit.window_ms // 1000}s")
    print(f"  {'gaming':<12} {table.gaming_session.max:>5} per {table.gaming_session.window_ms // 1000}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
