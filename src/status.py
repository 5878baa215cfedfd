"""Condition handling and the coarse status label shown to users."""

from datetime import datetime, timezone
from typing import Iterable, Optional

from environment import Condition, Environment

CONDITION_AVAILABLE = 'Available'
CONDITION_PROGRESSING = 'Progressing'
CONDITION_DEGRADED = 'Degraded'
CONDITION_TERMINATED = 'Terminated'

STATUS_TRUE = 'True'
STATUS_FALSE = 'False'
STATUS_UNKNOWN = 'Unknown'

# Highest priority first
_PRIORITY = (
    (CONDITION_TERMINATED, 'terminated'),
    (CONDITION_DEGRADED, 'degraded'),
    (CONDITION_PROGRESSING, 'progressing'),
    (CONDITION_AVAILABLE, 'running'),
)

UNKNOWN_LABEL = 'unknown'


def resolve_status(conditions: Optional[Iterable[Condition]]) -> str:
    """Map a condition list to one label.

    Condition types are checked in fixed priority order
    (Terminated > Degraded > Progressing > Available), independent of
    their order in the list. The first type with a True condition wins.
    """
    true_types = {c.type for c in (conditions or []) if c.status == STATUS_TRUE}
    for condition_type, label in _PRIORITY:
        if condition_type in true_types:
            return label
    return UNKNOWN_LABEL


def build_conditions(true_type: str, reason: str = '', message: str = '') -> list[Condition]:
    """Build the standard four-condition set with true_type set to True.

    Reason and message go on the true condition, and also on Terminated
    whenever a reason is given.
    """
    now = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    conditions = []
    for condition_type, _label in reversed(_PRIORITY):
        condition = Condition(
            type=condition_type,
            status=STATUS_TRUE if condition_type == true_type else STATUS_FALSE,
            last_transition_time=now,
        )
        if condition_type == true_type or (condition_type == CONDITION_TERMINATED and reason):
            condition.reason = reason
            condition.message = message
        conditions.append(condition)
    return conditions


def conditions_changed(old: list[Condition], new: list[Condition]) -> bool:
    """Compare condition sets ignoring timestamps."""
    by_type = {c.type: c for c in old}
    for condition in new:
        previous = by_type.get(condition.type)
        if previous is None:
            return True
        if (previous.status, previous.reason, previous.message) != \
                (condition.status, condition.reason, condition.message):
            return True
    return False


def set_condition(env: Environment, true_type: str, reason: str = '', message: str = '') -> bool:
    """Replace env's conditions; returns True if anything besides timestamps changed."""
    new = build_conditions(true_type, reason, message)
    changed = conditions_changed(env.status.conditions, new)
    if changed:
        env.status.conditions = new
    return changed


def mark_available(env: Environment) -> bool:
    return set_condition(env, CONDITION_AVAILABLE)


def mark_progressing(env: Environment, reason: str, message: str) -> bool:
    return set_condition(env, CONDITION_PROGRESSING, reason, message)


def mark_degraded(env: Environment, reason: str, message: str) -> bool:
    return set_condition(env, CONDITION_DEGRADED, reason, message)


def mark_terminated(env: Environment, reason: str = 'Terminated',
                    message: str = 'AWS resources have been terminated') -> bool:
    return set_condition(env, CONDITION_TERMINATED, reason, message)
