import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")

DEFAULT_PORT = "8080"


def build_uvicorn_args() -> list[str]:
  port = os.getenv("PORT", DEFAULT_PORT)
  return ["uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", port, "--no-server-header"]


def main() -> None:
  """Launch the API and its in-process workers."""
  args = build_uvicorn_args()
  logger.info("Starting fitplan-engine on port %s (workers=%s)...", args[-2], os.getenv("FITPLAN_WORKER_ENABLED", "1"))
  # Replace the current process so uvicorn receives SIGTERM directly.
  os.execvp("uvicorn", args)


if __name__ == "__main__":
  main()
