# -*- coding: utf-8 -*-
from __future__ import annotations
import logging, logging.handlers
from pathlib import Path

LOG_NAME = "stock_hub.log"

def setup_logging(settings) -> Path:
    """Configure rotating file logging under STOCK_HUB_DATA_ROOT/logs/stock_hub.log"""
    root = Path(settings.STOCK_HUB_DATA_ROOT).expanduser()
    log_dir = root / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_NAME

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s — %(message)s")
    handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(fmt)
    handler.setLevel(logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)
    if not _has_log_handler(logger):
        logger.addHandler(handler)

    # uvicorn/fastapi do not always propagate to root
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.setLevel(logging.INFO)
        if not _has_log_handler(lg):
            lg.addHandler(handler)

    return log_path


def automation_log_dir(settings) -> Path:
    """Directory for browser diagnostics (screenshots, page HTML)."""
    p = Path(settings.STOCK_HUB_DATA_ROOT).expanduser() / "logs" / "automation"
    p.mkdir(parents=True, exist_ok=True)
    return p


def _has_log_handler(lg: logging.Logger) -> bool:
    return any(getattr(h, "baseFilename", "").endswith(LOG_NAME) for h in lg.handlers)
