"""Run the chat service with uvicorn: ``python -m forum``."""
import uvicorn

from forum.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "forum.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    main()
