# actions/checkout.py
from __future__ import annotations

from typing import Any, Dict

from ..executor import StepContext, StepOutcome
from . import register_action


@register_action("checkout")
def checkout(context: StepContext, inputs: Dict[str, Any]) -> StepOutcome:
    """Runs locally against the working directory, so there is nothing to fetch."""
    if not context.workdir.is_dir():
        return StepOutcome(exit_code=1, output=f"checkout: working directory missing: {context.workdir}")
    return StepOutcome(exit_code=0, output=f"using local workspace {context.workdir}")
