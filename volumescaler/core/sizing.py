"""Candidate capacity computation."""

from typing import Union

from volumescaler.core.units import to_base_unit, to_ratio
from volumescaler.models.models import ScaleStrategy


def compute_new_capacity(scale: str,
                         strategy: Union[ScaleStrategy, str],
                         current_gi: float) -> float:
    """Compute the grown capacity in GiB, before clamping to the max size.

    Fixed strategies add ``scale`` as a size; every other strategy adds
    ``scale`` as a percentage of the current capacity.

    Raises:
        InvalidSize: If a fixed scale does not parse as a size
        InvalidPercentage: If a percentage scale does not parse
    """
    if not isinstance(strategy, ScaleStrategy):
        strategy = ScaleStrategy.from_label(strategy)

    if strategy is ScaleStrategy.FIXED:
        return current_gi + to_base_unit(scale)
    # Default arm: percentage growth
    return current_gi + current_gi * to_ratio(scale)
