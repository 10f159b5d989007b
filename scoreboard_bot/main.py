"""Entry point for the clan scoreboard bot."""

from __future__ import annotations

import os

from scoreboard_bot.core.engines.base.logging_utils import configure_logging, get_logger, parse_level
from scoreboard_bot.integrations.integration_loader import build_application
from scoreboard_bot.integrations.system_config import load_dotenv_files, require_keys

logger = get_logger("main")


def main() -> None:
    load_dotenv_files()
    configure_logging(level=parse_level(os.getenv("LOG_LEVEL")), log_file=os.getenv("LOG_FILE"))
    require_keys(["DISCORD_TOKEN"])

    bot, _loader = build_application()
    logger.info("Starting scoreboard bot")
    # logging is already configured; keep discord.py from installing its own handler
    bot.run(os.environ["DISCORD_TOKEN"], log_handler=None)


if __name__ == "__main__":
    main()
