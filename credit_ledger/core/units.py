"""
Unit counting and prediction.

Units are the provider-defined measure of consumed work (tokens).
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional

# Rough heuristic: 4 characters per unit of prompt text
CHARS_PER_UNIT = 4
# Completions are predicted at half the prompt length, capped by max units
COMPLETION_RATIO = 0.5
DEFAULT_MAX_COMPLETION_UNITS = 1000


@dataclass(frozen=True)
class UnitUsage:
    """Unit usage data for cost calculation.
    
    Contains exact unit counts without estimation or model-specific logic.
    """
    prompt_units: int
    completion_units: int

    def __post_init__(self):
        """Validate unit counts are non-negative."""
        if self.prompt_units < 0:
            raise ValueError("prompt_units cannot be negative")
        if self.completion_units < 0:
            raise ValueError("completion_units cannot be negative")
    
    @property
    def total_units(self) -> int:
        """Total units used (prompt + completion)."""
        return self.prompt_units + self.completion_units


def predict_units(
    messages: List[Dict[str, str]],
    max_units: Optional[int] = None
) -> UnitUsage:
    """Predict unit usage for a chat request before it is sent.
    
    Args:
        messages: Chat messages with a ``content`` field
        max_units: Completion cap requested from the provider
        
    Returns:
        Predicted UnitUsage for a pre-flight estimate
    """
    if max_units is None:
        max_units = DEFAULT_MAX_COMPLETION_UNITS
    
    prompt_text = " ".join(str(m.get("content") or "") for m in messages)
    prompt_units = math.ceil(len(prompt_text) / CHARS_PER_UNIT)
    completion_units = min(max_units, math.ceil(prompt_units * COMPLETION_RATIO))
    
    return UnitUsage(prompt_units=prompt_units, completion_units=completion_units)
