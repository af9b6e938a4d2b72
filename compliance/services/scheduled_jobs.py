"""
Compliance Engine
Scheduled Jobs.

Jobs:
    - compliance_tick: one full scheduling pass (cycles, generation,
      dispatch, escalation)
"""

from __future__ import annotations

import logging
from typing import Any

from compliance.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("compliance_tick")
def run_compliance_tick(app, now=None, dry_run: bool = False) -> dict[str, Any]:
    """Run the compliance scheduler tick."""
    from compliance.engine import ComplianceEngine

    result = ComplianceEngine.from_app(app).tick(now=now, dry_run=dry_run)
    if not result.ok:
        raise RuntimeError(f"{result.error_code}: {result.error}")
    return result.value
