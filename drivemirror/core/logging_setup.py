from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def setup_logging(level: str, logfile: str):
    Path(logfile).parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers to avoid duplicates across restarts/reloads.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)

    fh = logging.FileHandler(logfile, encoding="utf-8")
    fh.setLevel(log_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    root.info("logging initialized level=%s file=%s", level.upper(), logfile)


def engine_log_func(level: str, module: str, message: str, detail: str | None = None):
    """Bridge the engine's (level, module, message, detail) calls onto stdlib loggers."""
    if level.upper() == "WARN":
        level = "WARNING"
    logging.getLogger(module).log(
        getattr(logging, level.upper(), logging.INFO),
        f"{message} {detail or ''}".strip(),
    )
