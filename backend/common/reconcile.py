from typing import Dict, List, Optional

from common.models import Task, Recipient, ChannelState, RECIPIENT_ORDER, KNOWN_RECIPIENTS
from common.tasks import priority_key


def group_by_recipient(tasks: List[Task]) -> Dict[Recipient, List[Task]]:
    """
    Partition tasks into the four buckets, each stable-sorted by
    (urgency rank, due date). Duplicate ids keep their first occurrence.
    """
    buckets: Dict[Recipient, List[Task]] = {r: [] for r in RECIPIENT_ORDER}
    seen = set()
    for task in tasks:
        if task.id in seen:
            continue
        seen.add(task.id)
        buckets[task.recipient].append(task)
    for recipient in RECIPIENT_ORDER:
        buckets[recipient].sort(key=priority_key)
    return buckets


def take_from_bucket(candidates: List[Task], recipient: Recipient, remaining: int,
                     per_recipient_cap: int = 3) -> List[Task]:
    """Tasks one bucket may post given the global budget still unspent."""
    if remaining <= 0:
        return []
    if recipient == Recipient.UNASSIGNED:
        return [t for t in candidates if t.is_urgent][:remaining]
    return candidates[:min(per_recipient_cap, remaining)]


def allocate_full(tasks: List[Task], per_recipient_cap: int = 3, global_cap: int = 9) -> List[Task]:
    """
    Ordered list of tasks to post on an empty channel, assuming every post succeeds.

    ROB, SAM and ANNA take up to `per_recipient_cap` each; UNASSIGNED only
    takes overdue/due-today work, from whatever global budget is left.
    """
    buckets = group_by_recipient(tasks)
    allocation: List[Task] = []
    for recipient in RECIPIENT_ORDER:
        allocation.extend(
            take_from_bucket(buckets[recipient], recipient, global_cap - len(allocation), per_recipient_cap)
        )
    return allocation


def backfill_order(seed: Optional[Recipient]) -> List[Recipient]:
    order: List[Recipient] = []
    if seed is not None:
        order.append(seed)
    for recipient in KNOWN_RECIPIENTS:
        if recipient != seed:
            order.append(recipient)
    if seed != Recipient.UNASSIGNED:
        order.append(Recipient.UNASSIGNED)
    return order


def allocate_backfill(
    tasks: List[Task],
    state: ChannelState,
    seed: Optional[Recipient],
    per_recipient_cap: int = 3,
    global_cap: int = 9,
) -> Optional[Task]:
    """
    Pick at most one replacement after a completion freed a slot.

    Searches the completer's bucket first, then ROB, SAM, ANNA, then urgent
    UNASSIGNED work, returning the first task that is not already on the
    channel in a bucket that still has room.
    """
    if state.total_posted >= global_cap:
        return None

    buckets = group_by_recipient(tasks)
    for recipient in backfill_order(seed):
        if recipient != Recipient.UNASSIGNED and state.count(recipient) >= per_recipient_cap:
            continue
        for task in buckets[recipient]:
            if task.id in state.posted_task_ids:
                continue
            if recipient == Recipient.UNASSIGNED and not task.is_urgent:
                continue
            return task
    return None


def allocate_urgent_top_up(
    tasks: List[Task],
    state: ChannelState,
    per_recipient_cap: int = 3,
    global_cap: int = 9,
) -> List[Task]:
    """
    New urgent tasks that fit into each bucket's free capacity without
    disturbing what is already posted.
    """
    remaining = global_cap - state.total_posted
    if remaining <= 0:
        return []

    fresh = [t for t in tasks if t.is_urgent and t.id not in state.posted_task_ids]
    buckets = group_by_recipient(fresh)
    allocation: List[Task] = []
    for recipient in RECIPIENT_ORDER:
        if remaining <= 0:
            break
        available = max(0, per_recipient_cap - state.count(recipient))
        picked = buckets[recipient][:min(available, remaining)]
        allocation.extend(picked)
        remaining -= len(picked)
    return allocation
