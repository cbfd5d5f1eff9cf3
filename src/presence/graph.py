"""Invariant rules for a channel's status graph.

Selector flags (``starting_status``, ``on_reject``, ``on_timeout``,
``default_blocked``, ``default_unblocked``) are channel wide singletons:
assigning one to a status demotes whichever sibling held it before. Nothing
here performs I/O; the services feed these helpers with repository reads.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Sequence

from msgspec import structs

from .exceptions import InvariantViolation, UnknownTransitionTarget
from .models import STATUS_MODEL, GlobalStatus, Status


class Selector(str, Enum):
    STARTING = "starting_status"
    ON_REJECT = "on_reject"
    ON_TIMEOUT = "on_timeout"
    DEFAULT_BLOCKED = "default_blocked"
    DEFAULT_UNBLOCKED = "default_unblocked"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


def validate_rename(old: Status | GlobalStatus, new: Status | GlobalStatus, *, entity: str = STATUS_MODEL) -> None:
    """Reject renaming a system status."""

    if old.system and new.name != old.name:
        raise InvariantViolation(
            f"can not change name of system status '{old.name}'",
            field="name",
            entity=entity,
        )


def compute_sibling_resets(changed: Status, siblings: Iterable[Status]) -> list[Status]:
    """Return the siblings that must drop a default selector ``changed`` now holds.

    The returned records already carry the cleared flag.
    """

    resets: list[Status] = []
    for sibling in siblings:
        if sibling.id == changed.id:
            continue
        clear_blocked = changed.default_blocked and sibling.default_blocked
        clear_unblocked = changed.default_unblocked and sibling.default_unblocked
        if not (clear_blocked or clear_unblocked):
            continue
        resets.append(
            structs.replace(
                sibling,
                default_blocked=sibling.default_blocked and not clear_blocked,
                default_unblocked=sibling.default_unblocked and not clear_unblocked,
            )
        )
    return resets


def validate_timer_target(status: Status, candidate_target_id: str, all_in_channel: Sequence[Status]) -> None:
    """Ensure ``candidate_target_id`` names a status of ``status``'s channel."""

    for candidate in all_in_channel:
        if candidate.id == candidate_target_id and candidate.channel_id == status.channel_id:
            return
    raise UnknownTransitionTarget(
        f"timer transition target '{candidate_target_id}' is not a status of channel {status.channel_id}",
        field="timer_transition_id",
        entity=STATUS_MODEL,
    )


def validate_transition_targets(status: Status, targets: Iterable[Status]) -> None:
    """Ensure every manual transition target is a sibling of ``status``."""

    for target in targets:
        if target.channel_id != status.channel_id:
            raise UnknownTransitionTarget(
                f"transition target '{target.id}' is not a status of channel {status.channel_id}",
                field="transition_ids",
                entity=STATUS_MODEL,
            )


def apply_blocked_defaults(status: Status, *, default_blocked: bool, default_unblocked: bool) -> Status:
    """Set the default selectors compatible with ``status.blocked``.

    ``default_blocked`` can only be held by a blocked status and
    ``default_unblocked`` only by an unblocked one; the incompatible flag is
    always cleared.
    """

    if status.blocked:
        return structs.replace(status, default_blocked=default_blocked, default_unblocked=False)
    return structs.replace(status, default_blocked=False, default_unblocked=default_unblocked)


def holders(statuses: Iterable[Status], selector: Selector) -> list[Status]:
    return [status for status in statuses if getattr(status, selector.value)]


def selector_violations(statuses: Iterable[Status]) -> dict[tuple[str, Selector], list[str]]:
    """Map ``(channel_id, selector)`` to the ids of every holder when more than one exists."""

    by_channel: dict[str, list[Status]] = {}
    for status in statuses:
        by_channel.setdefault(status.channel_id, []).append(status)
    violations: dict[tuple[str, Selector], list[str]] = {}
    for channel_id, members in by_channel.items():
        for selector in Selector:
            found = holders(members, selector)
            if len(found) > 1:
                violations[(channel_id, selector)] = [status.id for status in found]
    return violations


__all__ = [
    "Selector",
    "apply_blocked_defaults",
    "compute_sibling_resets",
    "holders",
    "selector_violations",
    "validate_rename",
    "validate_timer_target",
    "validate_transition_targets",
]
