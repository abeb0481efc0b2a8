"""Version information for reviewsync.

Single source of truth for version number.
"""

__version__ = "0.4.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 0.4.0 - Cron scheduling, Gitiles log browsing, update check
# 0.3.0 - Per-status sync cursors with safety window
# 0.2.0 - Ollama analysis pipeline with retry and sanitization
# 0.1.0 - Initial Gerrit change sync
