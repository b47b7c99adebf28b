"""
arrayde CLI - microarray normalization and differential expression.

Commands:
    arrayde run   - Raw intensities -> moderated differential expression table
"""

import argparse
import logging
import sys
from typing import List, Optional

from arrayde import __version__


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for arrayde."""
    parser = argparse.ArgumentParser(
        prog="arrayde",
        description="Microarray normalization-to-inference pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run           Background-correct, normalize, clean and test one study

Examples:
  arrayde run --config GSE1234.yaml
  arrayde run --accession GSE1234 --platform bead --raw data/raw \\
      --metadata samples.tsv --group "re:control|healthy=control" --default-group case \\
      --contrast case-control --output results/GSE1234.de.tsv
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from arrayde.cli import run
    run.register_parser(subparsers)

    argv = list(args) if args is not None else sys.argv[1:]
    parsed_args = parser.parse_args(argv)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    parsed_args.argv = argv

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
