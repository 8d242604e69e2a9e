"""Console and session-log handlers for the ralph_loop logger tree."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SESSION_LOG = "session.log"

_ROOT = "ralph_loop"


def configure_logging(verbose: bool = False, logs_dir: Path | None = None) -> logging.Logger:
	"""Install a stderr handler and, when ``logs_dir`` is given, a session.log file handler.

	Safe to call more than once; previously installed handlers are replaced.
	"""
	root = logging.getLogger(_ROOT)
	for handler in list(root.handlers):
		root.removeHandler(handler)
		handler.close()

	level = logging.DEBUG if verbose else logging.INFO
	root.setLevel(logging.DEBUG)
	root.propagate = False
	formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

	console = logging.StreamHandler(sys.stderr)
	console.setLevel(level)
	console.setFormatter(formatter)
	root.addHandler(console)

	if logs_dir is not None:
		logs_dir.mkdir(parents=True, exist_ok=True)
		file_handler = logging.FileHandler(logs_dir / SESSION_LOG, encoding="utf-8")
		file_handler.setLevel(level)
		file_handler.setFormatter(formatter)
		root.addHandler(file_handler)

	return root
