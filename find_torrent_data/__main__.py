#!/usr/bin/env python3
"""Command-line entry point for the find-torrent-data package.

This module provides a command-line interface for rebuilding a torrent's
directory layout from existing data using hard or symbolic links.
"""

from .cli import main

if __name__ == "__main__":
    main()
