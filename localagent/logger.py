"""Logging configuration for the local agent."""

import logging
from pathlib import Path


def setup_logging(log_file: str = "log/localagent.log", level: int | str = logging.INFO, stream: bool = True) -> None:
    """Setup logging to file and optionally stderr."""

    # Create log directory if it doesn't exist
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
    ]
    if stream:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,  # Overwrite existing config
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("localagent").setLevel(level)

    logging.info("=" * 60)
    logging.info(f"Local agent logging started. Writing to {log_path.absolute()}")
    logging.info("=" * 60)
