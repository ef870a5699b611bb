"""Send-to-customer staging: which notification goes out and what the counter becomes."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class NotificationKind(str, enum.Enum):
    initial = "initial"
    first_batch_ready = "first_batch_ready"
    revision_round = "revision_round"
    illustrations_initial = "illustrations_initial"
    illustrations_first_batch_ready = "illustrations_first_batch_ready"
    illustrations_revision_round = "illustrations_revision_round"
    # admin-facing notices
    customer_review_submitted = "customer_review_submitted"
    characters_approved = "characters_approved"
    illustrations_approved = "illustrations_approved"


_ILLUSTRATION_VARIANTS = {
    NotificationKind.initial: NotificationKind.illustrations_initial,
    NotificationKind.first_batch_ready: NotificationKind.illustrations_first_batch_ready,
    NotificationKind.revision_round: NotificationKind.illustrations_revision_round,
}


@dataclass(frozen=True, slots=True)
class SendPlan:
    new_count: int
    kind: NotificationKind
    round_number: int | None = None  # N of "revision round N"

    @property
    def advances(self) -> bool:
        return self.kind not in (NotificationKind.initial, NotificationKind.illustrations_initial)


def plan_send(previous_count: int, has_imagery: bool, *, illustrations: bool = False) -> SendPlan:
    """Decide the next counter value and notification variant for a send.

    The counter only moves when imagery exists at send time.
    """
    if previous_count < 0:
        raise ValueError("send counter cannot be negative")

    if not has_imagery:
        plan = SendPlan(previous_count, NotificationKind.initial)
    elif previous_count == 0:
        plan = SendPlan(1, NotificationKind.first_batch_ready)
    else:
        new_count = previous_count + 1
        plan = SendPlan(new_count, NotificationKind.revision_round, new_count - 1)

    if illustrations:
        return SendPlan(plan.new_count, _ILLUSTRATION_VARIANTS[plan.kind], plan.round_number)
    return plan


__all__ = ["NotificationKind", "SendPlan", "plan_send"]
