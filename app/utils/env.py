"""Minimal .env support so local runs pick up FITPLAN_* settings."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

_QUOTES = ("'", '"')


def default_env_path() -> Path:
  return Path(__file__).resolve().parents[2] / ".env"


def parse_env_line(raw_line: str) -> tuple[str, str] | None:
  """Split one `KEY=value` line; comments, blanks and malformed lines yield None."""
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None
  line = line.removeprefix("export ").lstrip()
  key, sep, value = line.partition("=")
  key, value = key.strip(), value.strip()
  if not sep or not key:
    return None
  if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
    value = value[1:-1]
  return key, value


def iter_env_file(path: Path) -> Iterator[tuple[str, str]]:
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    entry = parse_env_line(raw_line)
    if entry is not None:
      yield entry


def load_env_file(path: Path, *, override: bool = False) -> None:
  """Copy pairs from `path` into os.environ; a missing file is a no-op."""
  if not path.is_file():
    return
  for key, value in iter_env_file(path):
    if override or key not in os.environ:
      os.environ[key] = value
