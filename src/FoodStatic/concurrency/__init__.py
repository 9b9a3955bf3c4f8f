# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across FoodStatic components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across FoodStatic components.

Currently exposes :func:`create_executor` (IO → threads, CPU → spawned
processes) and :func:`default_workers` which reports the available
parallelism used as the default pool size.
"""

from .executors import create_executor, default_workers

__all__ = ["create_executor", "default_workers"]
