"""arq worker settings module.

Import path for arq CLI: arq ecotrack.workers.settings.WorkerSettings
"""

from __future__ import annotations

from ecotrack.workers.progression_worker import ProgressionWorkerSettings as WorkerSettings

__all__ = ["WorkerSettings"]
