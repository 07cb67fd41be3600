"""Process-wide logging setup."""

import logging

from visionary.config import Settings, settings as default_settings


def setup_logging(settings: Settings = default_settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every request at INFO; polling every few seconds drowns the orchestrator lines
    logging.getLogger("httpx").setLevel(logging.WARNING)
