#!/usr/bin/env python3
"""Command-line interface for find-torrent-data."""

# Standard library imports
import argparse
import sys
from pathlib import Path

# Local application imports
from find_torrent_data.find_torrent_data import SearchOptions, find_torrent_data


def parse_threshold(value: str) -> float:
    """Parse the fraction of pieces to verify.

    Raises:
        ValueError: If the value is not a number in [0.0, 1.0]

    """
    try:
        threshold = float(value)
    except ValueError as e:
        raise ValueError(f"Invalid hash fraction '{value}': not a number") from e
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Invalid hash fraction '{value}': must be between 0.0 and 1.0")
    return threshold


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="find-torrent-data",
        description="Search for files that are part of a torrent and prepare a directory with links to these files",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="Show this help message and exit")
    parser.add_argument("torrent_file", help="Path to the .torrent file")
    parser.add_argument("-i", "--input", action="append", required=True, metavar="DIR", help="Add search directory (may be repeated)")
    parser.add_argument("-o", "--output", default="./", help="Output directory (default: ./)")
    parser.add_argument("-s", "--symlinks", action="store_true", help="Use symbolic links instead of hard links")
    parser.add_argument("--follow-symlinks", action="store_true", help="Follow symbolic links in input directories")
    parser.add_argument(
        "-h",
        "--hash",
        default="1.0",
        metavar="FRACTION",
        help="Fraction of hash pieces to be verified, from 0.0 to 1.0 (default: 1.0)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be linked without actually creating links",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return parser.parse_args()


def main() -> None:
    """Parse programm arguments and run corresponding action."""
    try:
        args = parse_args()
        torrent_path = Path(args.torrent_file)

        if not torrent_path.exists():
            print(f"Error: Torrent file '{torrent_path}' not found", file=sys.stderr)
            sys.exit(1)

        try:
            threshold = parse_threshold(args.hash)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

        options = SearchOptions(
            follow_symlinks=args.follow_symlinks,
            create_symlinks=args.symlinks,
            hash_threshold=threshold,
            dry_run=args.dry_run,
            no_progress=args.no_progress,
        )
        success = find_torrent_data(
            torrent_path,
            args.input,
            Path(args.output),
            options=options,
        )
        sys.exit(0 if success else 1)

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
