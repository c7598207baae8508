import logging
import os
import subprocess
import sys

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  if os.getenv("CHUNKLINE_STORAGE_BACKEND", "postgres").strip().lower() == "postgres":
    logger.info("Upgrading chunkline schema to head...")
    try:
      subprocess.run([sys.executable, "-m", "alembic", "upgrade", "head"], check=True, cwd=os.path.dirname(os.path.abspath(__file__)))
    except subprocess.CalledProcessError as exc:
      logger.error("Migration failed with exit code %s", exc.returncode)
      sys.exit(exc.returncode)

  port = os.getenv("PORT", "8002")
  logger.info("Starting chunkline on port %s", port)
  # exec so uvicorn receives SIGTERM directly
  os.execvp("uvicorn", ["uvicorn", "chunkline.main:app", "--host", "0.0.0.0", "--port", port])


if __name__ == "__main__":
  main()
