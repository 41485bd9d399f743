from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from corridortrack.settings import project_root


def _default_logging_dict(level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"}
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            }
        },
        "loggers": {
            # Location updates arrive every few seconds per vehicle; access lines drown everything else.
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def configure_logging(
    logging_config_path: str | Path | None = None,
    *,
    level: Optional[str] = None,
) -> None:
    """Configure stdlib logging from `configs/logging.yaml`, or a console default when absent."""

    root = project_root()
    candidate = logging_config_path or os.getenv(
        "CORRIDORTRACK_LOGGING_CONFIG", "configs/logging.yaml"
    )
    path = Path(candidate)
    if not path.is_absolute():
        path = root / path

    effective_level = (level or os.getenv("CORRIDORTRACK_LOG_LEVEL") or "INFO").upper()
    if not path.exists():
        logging.config.dictConfig(_default_logging_dict(effective_level))
        return

    config: dict[str, Any] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    logging.config.dictConfig(config)
    if level:
        logging.getLogger().setLevel(effective_level)
