import logging
from typing import Iterable

_NOISY_LOGGERS = (
    "fontTools",
    "fontTools.subset",
    "fontTools.ttLib",
    "matplotlib.font_manager",
)


def configure_logger(
    logger: logging.Logger,
    *,
    verbose: bool = False,
    debug: bool = False,
    quiet_level: int = logging.ERROR,
) -> logging.Logger:
    """Set a logger and all of its handlers to the level implied by verbose/debug."""
    level = logging.DEBUG if debug else logging.INFO if verbose else quiet_level

    logger.setLevel(level)
    for handler in getattr(logger, "handlers", ()):
        handler.setLevel(level)
    return logger


def quiet_loggers(names: Iterable[str] = _NOISY_LOGGERS) -> None:
    """Raise chatty third-party loggers to WARNING and stop propagation."""
    for name in names:
        lg = logging.getLogger(name)
        lg.setLevel(logging.WARNING)
        lg.propagate = False
