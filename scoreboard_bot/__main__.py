"""
Entry point for running the project as a module:
    python -m scoreboard_bot
"""
from scoreboard_bot.main import main


if __name__ == "__main__":
    main()
