"""Logging setup for console and CLI runs."""

import logging

from rich.logging import RichHandler


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with a rich console handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # SDK transport logs are noisy at INFO
    for noisy in ("azure", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
