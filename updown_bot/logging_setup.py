from __future__ import annotations

import logging

_NOISY_LOGGERS = ("httpx", "httpcore", "py_clob_client")


def configure_logging(level: str | int = "INFO") -> None:
    """Root handler for the CLI; HTTP client chatter is kept at WARNING."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
