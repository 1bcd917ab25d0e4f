"""Priority resolution — pick the one threshold that wins for an item."""

from typing import Sequence

from stockalert.schemas.alerts import Threshold


def resolve_priority(fired: Sequence[Threshold]) -> Threshold:
    """Return the highest-severity threshold.

    Ties keep the first one in evaluation order; there is no secondary key.
    """
    if not fired:
        raise ValueError("resolve_priority() needs at least one fired threshold")

    winner = fired[0]
    for candidate in fired[1:]:
        if candidate.severity.rank > winner.severity.rank:
            winner = candidate
    return winner
