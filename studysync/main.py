from __future__ import annotations

import os

import uvicorn

from studysync.config_manager import ConfigManager
from studysync.logging_setup import setup_logging


def main() -> None:
    config = ConfigManager(os.getenv("STUDYSYNC_CONFIG_PATH", "config.yaml")).load()
    setup_logging(config.logging.level)
    host = os.getenv("STUDYSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("STUDYSYNC_PORT", "8080"))
    uvicorn.run("studysync.web_app:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
