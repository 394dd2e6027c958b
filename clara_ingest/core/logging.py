"""Logging configuration."""

import logging
import sys
from typing import Optional

from clara_ingest.core.config import settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure application logging."""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Set third-party loggers to WARNING
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)
    logging.getLogger("qdrant_client").setLevel(logging.WARNING)


def short_hash(digest: Optional[str]) -> str:
    """Shorten a content hash for log lines."""
    if not digest:
        return "-"
    return f"{digest[:16]}..."
