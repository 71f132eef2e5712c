import logging
import os
import sys
from typing import Optional

from decouple import AutoConfig

from .configuration import DEFAULT_CONFIG, Config, load_configuration

CONFIG_BASE_URL = os.getenv(
    "RIPPLE_BASE_CONFIG_PATH", os.path.join(os.path.expanduser("~"), ".ripple")
)
decouple_config = AutoConfig(search_path=CONFIG_BASE_URL)
USER_CONFIG = decouple_config("RIPPLE_USER_CONFIG_PATH", default="~/.ripple/config.toml")
ENV_VAR_PREFIX = "RIPPLE"


def load_default_config() -> "Config":
    return load_configuration(
        path=DEFAULT_CONFIG,
        user_config_path=USER_CONFIG,
        env_var_prefix=ENV_VAR_PREFIX,
    )


def configure_logging(testing: bool = False) -> logging.Logger:
    """
    Creates the "ripple" logger with a stdout `StreamHandler` whose level and
    format come from the `[logging]` section of the config.

    Args:
        - testing (bool, optional): configure a "ripple-test-logger" instead of the
            standard "ripple" logger to isolate global state during testing

    Returns:
        - logging.Logger: a configured logging object
    """
    logger = logging.getLogger("ripple-test-logger" if testing else "ripple")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(config.logging.format, config.logging.datefmt))
    logger.addHandler(handler)
    logger.setLevel(config.logging.level)

    return logger


def set_log_level(level: str) -> None:
    """Change the level of the root ripple logger (used by `--verbose`)."""
    ripple_logger.setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Returns the root ripple logger, or its child `ripple.{name}` when a name
    is given. Children inherit the root logger's handler and level.
    """
    if name is None:
        return ripple_logger
    return ripple_logger.getChild(name)


config = load_default_config()
ripple_logger = configure_logging()

logger = get_logger()
logger.propagate = False
