"""Weekly schedule evaluation.

Times are wall-clock local and compared as "HH:MM" strings, so a block
never wraps past midnight: one whose end is before its start never matches.
"""

import re
from datetime import datetime

from parenta_shared import FilterMode, Schedule, TimeBlock

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def weekday_index(now: datetime) -> int:
    """Day of week with 0=Sunday, 6=Saturday."""
    return (now.weekday() + 1) % 7


def _matches(block: TimeBlock, day: int, clock: str) -> bool:
    return block.day_of_week == day and block.start_time <= clock <= block.end_time


def matching_block(schedule: Schedule, now: datetime) -> TimeBlock | None:
    """Return the first block covering ``now``, in stored order."""
    day = weekday_index(now)
    clock = now.strftime("%H:%M")
    for block in schedule.time_blocks:
        if _matches(block, day, clock):
            return block
    return None


def is_allowed_at(schedule: Schedule, now: datetime) -> bool:
    """Whether internet access is allowed at ``now``. Both ends are inclusive."""
    return matching_block(schedule, now) is not None


def filter_mode_at(schedule: Schedule, now: datetime) -> FilterMode:
    """Filter mode in effect at ``now``, normal when no block matches."""
    block = matching_block(schedule, now)
    if block is None:
        return FilterMode.NORMAL
    return block.filter_mode


def validate_blocks(blocks: list[TimeBlock]) -> list[str]:
    """Check blocks for problems an admin should fix before saving.

    Returns human-readable error strings; empty means the blocks are valid.
    """
    errors: list[str] = []
    for i, block in enumerate(blocks):
        if not _HHMM.match(block.start_time) or not _HHMM.match(block.end_time):
            errors.append(f"block {i}: times must be HH:MM")
            continue
        if block.end_time < block.start_time:
            errors.append(f"block {i}: end_time is before start_time")

    if errors:
        return errors

    by_day: dict[int, list[tuple[int, TimeBlock]]] = {}
    for i, block in enumerate(blocks):
        by_day.setdefault(block.day_of_week, []).append((i, block))
    for day, day_blocks in sorted(by_day.items()):
        day_blocks.sort(key=lambda item: item[1].start_time)
        for (i, prev), (j, cur) in zip(day_blocks, day_blocks[1:]):
            # Touching blocks (12:00 end, 12:00 start) are allowed
            if cur.start_time < prev.end_time:
                errors.append(f"block {j} overlaps block {i} on day {day}")
    return errors
