"""arq worker settings module.

Import path for arq CLI: arq meetup.workers.settings.WorkerSettings
"""

from __future__ import annotations

from meetup.workers.maintenance import WorkerSettings

__all__ = ["WorkerSettings"]
