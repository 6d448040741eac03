"""Pipeline modules: orchestration layer above the sparks domain.

  daily: background batch generation for every registered user

Pipeline modules import domain logic via public APIs
(``from incurio.sparks import ...``), not sparks sub-modules, except for
small helpers such as ``incurio.sparks.days``.
"""

from incurio.pipeline.daily import in_generation_window, run_daily_generation

__all__ = ["in_generation_window", "run_daily_generation"]
