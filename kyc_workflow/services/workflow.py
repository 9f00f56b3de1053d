"""
Transition tables shared by the KYC and loan-application workflows.

A table lists every status of its enum explicitly, each with the actions it
accepts and the status each action leads to. Statuses with no outgoing
actions are listed with an empty mapping; there is no fallthrough.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Tuple, Type

from kyc_workflow.errors import InvalidTransition, WorkflowError
from kyc_workflow.schemas import BulkActionError, BulkActionResult

logger = logging.getLogger(__name__)


class TransitionTable:
    def __init__(self, statuses: Type[Enum], transitions: Mapping[Enum, Mapping[str, Enum]]):
        missing = [s for s in statuses if s not in transitions]
        if missing:
            raise ValueError(f"Transition table has no guard for: {', '.join(s.value for s in missing)}")
        for source, actions in transitions.items():
            for action, target in actions.items():
                if not isinstance(target, statuses):
                    raise ValueError(f"{source.value} --{action}--> {target!r} is not a {statuses.__name__}")
        self.statuses = statuses
        self._transitions: Dict[Enum, Dict[str, Enum]] = {s: dict(a) for s, a in transitions.items()}

    def target(self, current: Enum, action: str) -> Enum:
        """Return the status `action` leads to from `current`, or raise InvalidTransition."""
        actions = self._transitions[current]
        if action not in actions:
            raise InvalidTransition(current, action)
        return actions[action]

    def allowed_actions(self, current: Enum) -> Tuple[str, ...]:
        return tuple(self._transitions[current])

    def sources_for(self, action: str) -> Tuple[Enum, ...]:
        return tuple(s for s, actions in self._transitions.items() if action in actions)


def run_bulk(ids: Iterable[str], action: Callable[[str], Any], label: str) -> BulkActionResult:
    """Apply `action` to each id; one failure never stops the batch."""
    ids = list(ids)
    result = BulkActionResult(requested=len(ids))
    for item_id in ids:
        try:
            action(item_id)
        except WorkflowError as e:
            result.failed += 1
            result.errors.append(BulkActionError(id=item_id, message=e.message or f"Failed to {label}"))
        else:
            result.succeeded += 1
            result.succeeded_ids.append(item_id)
    logger.info("Bulk %s: %d of %d succeeded", label, result.succeeded, result.requested)
    return result
