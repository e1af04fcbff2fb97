import logging
import logging.handlers
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from app.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# Server loggers that install their own handlers; they are pointed at ours instead.
ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")
# Chatty client libraries are capped at WARNING unless debugging.
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "asyncio")

_TRACEBACK_TAIL = 5

_active_log_path: Path | None = None


class TruncatedFormatter(logging.Formatter):
  """Console formatter that keeps the exception header and the innermost frames."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) <= _TRACEBACK_TAIL + 1:
      return "".join(lines)
    return "".join([lines[0], "    ...\n", *lines[-_TRACEBACK_TAIL:]])


def rotated_log_name(default_name: str) -> str:
  """Rename RotatingFileHandler backups from app.log.1 to app.log-1."""
  stem, _, suffix = default_name.rpartition(".")
  if stem and suffix.isdigit():
    return f"{stem}-{suffix}"
  return default_name


def _default_log_dir() -> Path:
  return Path(__file__).resolve().parents[2] / "logs"


def _new_log_path(log_dir: Path) -> Path:
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"fitplan_app_{time.strftime('%Y%m%d_%H%M%S')}.log"
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Cannot prepare log file under {log_dir}: {exc}") from exc
  return log_path


def _console_handler() -> logging.Handler:
  handler = logging.StreamHandler(sys.stdout)
  handler.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return handler


def _file_handler(settings: Settings, log_path: Path) -> logging.Handler:
  handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  handler.namer = rotated_log_name
  # Full tracebacks go to the file.
  handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return handler


def setup_logging(settings: Settings, *, log_dir: Path | None = None) -> Path:
  """Send root and server logs to stdout and a rotating file; return the file path."""
  log_path = _new_log_path(log_dir or _default_log_dir())
  handlers = [_console_handler(), _file_handler(settings, log_path)]
  level = logging.DEBUG if settings.debug else logging.INFO

  logging.basicConfig(level=level, handlers=handlers, force=True)
  for name in ROUTED_LOGGERS:
    routed = logging.getLogger(name)
    routed.handlers = list(handlers)
    routed.propagate = False
  if not settings.debug:
    for name in NOISY_LOGGERS:
      logging.getLogger(name).setLevel(logging.WARNING)
  return log_path


def _initialize_logging(settings: Settings) -> None:
  """Configure logging once per process."""
  global _active_log_path
  if _active_log_path is not None:
    return
  _active_log_path = setup_logging(settings)
  logging.getLogger("app.core.logging").info("Logging initialized. Writing to %s", _active_log_path)
