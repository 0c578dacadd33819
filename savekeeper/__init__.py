"""Save Keeper: automatic, deduplicated backups of a single watched file.

Watches one file for content changes and archives a timestamped copy of
every genuine change, keeping at most a configured number of backups.
"""

__version__ = "1.0.0"
__app_name__ = "Save Keeper"
