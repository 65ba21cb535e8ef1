import sys
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Union

from loguru import logger

from ..config.settings import config

DEFAULT_LOG_DIR = Path(__file__).resolve().parents[3] / "logs"
LOG_FILENAME = "vault_pricing.log"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <8}</level> "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def _log_file_candidates(log_dir: Path) -> Iterator[Path]:
    yield log_dir / LOG_FILENAME
    yield Path(tempfile.gettempdir()) / LOG_FILENAME


def setup_logger(level: Optional[str] = None, *, log_dir: Union[str, Path, None] = None):
    """Route pricing logs to stderr and the first writable log file.

    The file goes under ``log_dir`` (``LOG_DIR`` or ``<repo>/logs``), then the
    system temp directory. When neither is writable only stderr is used.
    """
    level = (level or config.log_level).upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    for path in _log_file_candidates(Path(log_dir or config.log_dir or DEFAULT_LOG_DIR)):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                path,
                level=level,
                format=FILE_FORMAT,
                rotation="10 MB",
                retention=5,
                encoding="utf-8",
                enqueue=True,
            )
        except OSError as exc:
            logger.warning("Log file {} is not writable: {}", path, exc)
            continue
        logger.debug("Writing logs to {}", path)
        break
    return logger
