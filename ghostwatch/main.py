import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv

from .core.config import Settings, get_settings
from .lifecycle import lifespan
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


def load_environment(project_root: Path) -> None:
    """Load .env then .env.local (later files override earlier)."""
    env_file = project_root / ".env"
    env_local = project_root / ".env.local"
    if env_file.exists():
        load_dotenv(env_file, override=True)
    if env_local.exists():
        load_dotenv(env_local, override=True)


async def serve(settings: Settings) -> None:
    """Run until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    async with lifespan(settings):
        await stop.wait()


def main() -> None:
    load_environment(Path.cwd())
    get_settings.cache_clear()
    settings = get_settings()
    setup_logging(log_level=settings.log_level, log_to_file=True)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


def run() -> None:
    main()


if __name__ == "__main__":
    main()
