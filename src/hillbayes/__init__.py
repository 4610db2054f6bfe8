"""hillbayes: Bayesian fitting of Hill dose-response curves."""

import logging
from importlib.metadata import PackageNotFoundError, version
from logging.handlers import RotatingFileHandler
from pathlib import Path

try:
    __version__ = version("hillbayes")
except PackageNotFoundError:
    __version__ = "unknown"

__fit_out_dir__ = f"fit-{__version__}"

# Console level by number of -v flags
_CONSOLE_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)
_FILE_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)-28s : %(message)s"


def _file_handler(log_file: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(log_file, maxBytes=10**6, backupCount=3)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M"))
    return handler


def configure_logging(
    verbose: int = 0, quiet: bool = False, log_file: str = "hillbayes.log"
) -> None:
    """Attach file and console handlers to the root logger.

    Calling it again does not duplicate handlers: the console handler is
    re-levelled and a file handler is added only for a new path. Library
    modules never call it.

    Parameters
    ----------
    verbose : int
        Number of ``-v`` flags: 0 shows warnings, 1 info, 2 or more debug.
    quiet : bool
        Show only errors on the console, whatever `verbose` says.
    log_file : str
        Rotating DEBUG log (1 MB, 3 backups). Empty string disables it.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if quiet:
        console_level = logging.ERROR
    else:
        console_level = _CONSOLE_LEVELS[min(max(verbose, 0), len(_CONSOLE_LEVELS) - 1)]

    if log_file:
        path = str(Path(log_file).resolve())
        known = {
            getattr(h, "baseFilename", None)
            for h in root.handlers
            if isinstance(h, RotatingFileHandler)
        }
        if path not in known:
            root.addHandler(_file_handler(path))

    consoles = [h for h in root.handlers if type(h) is logging.StreamHandler]
    if not consoles:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("[%(levelname)-8s]  %(message)s"))
        root.addHandler(console)
        consoles = [console]
    for h in consoles:
        h.setLevel(console_level)

    # warnings.warn(DivergenceWarning) ends up in the handlers above
    logging.captureWarnings(True)
