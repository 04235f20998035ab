"""Demo task command: greets the name found in the input file."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--input", default=os.getenv("INPUT"))
    parser.add_argument("--output", default=os.getenv("OUTPUT"))
    parser.add_argument(
        "--fail",
        action="store_true",
        help="Exit with an error instead of writing output.",
    )
    args = parser.parse_args(argv)
    if not args.input or not args.output:
        parser.error("INPUT and OUTPUT must be set or passed as --input/--output")

    name = Path(args.input).read_text("utf-8").strip()
    if args.fail:
        print(f"Refusing to greet {name}", file=sys.stderr)
        return 1
    Path(args.output).write_text(f"Hello, {name}!", "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
