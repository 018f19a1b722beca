"""
Logging setup shared by the API and the review worker.
"""
import logging

import logfire

from reviewagent.config import config as agent_config

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once per process and optionally enable Logfire."""
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if agent_config.enable_logfire and agent_config.logfire_token:
        logfire.configure(token=agent_config.logfire_token)
        logfire.instrument_pydantic_ai()
        logging.getLogger().addHandler(logfire.LogfireLoggingHandler())

    _configured = True
