"""habitchain: habit streaks, chain sessions and the XP/rank economy."""

__version__ = "0.4.0"
