"""
EmbedTV background tasks

Provides:
- Interval channel rebuilds (scrape, reconcile, hydrate)
- On-demand rebuild triggers
"""

from embedtv.tasks.scheduler import (
    RebuildScheduler,
    get_rebuild_scheduler,
    init_rebuild_scheduler,
)

__all__ = [
    "RebuildScheduler",
    "get_rebuild_scheduler",
    "init_rebuild_scheduler",
]
