"""Gold shop back-office: stock, sales/purchases, customer ledger and cash.

Importing the package sets up ``log``, the logger every module writes to.
Records go to a rotating file under ``GOLDSHOP_LOG_DIR`` (``<project>/.logs``
when unset) and warnings reach stderr. ``GOLDSHOP_LOG_LEVEL`` moves the
package threshold.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("GOLDSHOP_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "goldshop_erp.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_level(name: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name such as ``"debug"`` to its number; unknown names give ``default``."""

    if not name:
        return default
    return logging.getLevelNamesMapping().get(name.strip().upper(), default)


def _file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: file logging disabled, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(resolve_level(os.environ.get("GOLDSHOP_LOG_LEVEL")))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    # Console only carries problems; routine writes stay in the file.
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _configure_logging()
