"""Logging setup shared by the server and maintenance commands."""

from __future__ import annotations

import logging


def setup_logging(program: str, verbose: bool = False) -> None:
    """Sets up the root logger to write to stderr.

    Args:
      program: Name of the program prefixed to every line.
      verbose: If true, log DEBUG messages as well as INFO.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(program + ": [%(levelname)s] %(name)s: %(message)s"))
    root = logging.getLogger("")
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
