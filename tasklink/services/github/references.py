"""
Task reference extraction from commit messages and pull request text.

Recognised forms (case-insensitive):

    #12                      REFERENCE
    TASK-12, DEV_12, BUG12   REFERENCE  (prefixes: TASK DEV ISSUE BUG FEAT FIX)
    closes #12               CLOSES     (close / closes)
    fixes #12                FIXES      (fixes)
    resolves #12             RESOLVES   (resolve / resolves)

Keyword forms also accept a prefixed code, e.g. ``fixes BUG-7``. Past tenses
(``closed``, ``fixed``) are not closing keywords; ``closed #4`` is a plain
reference. Bare ids need no word boundary, so ``#12abc`` and ``feature_TASK-9``
still reference 12 and 9.

Each task id appears once in the result. When several forms mention the same
id, a closing type beats REFERENCE; between closing types the earlier family
wins. Results keep the order in which ids were first inserted.
"""

import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from tasklink.core.logging import get_logger
from tasklink.db.models.task_link import LinkType

logger = get_logger(__name__)

_PREFIX = r"(?:TASK|DEV|ISSUE|BUG|FEAT|FIX)[-_]?"
_TARGET = rf"(?:#|{_PREFIX})(\d+)"

# Applied in this order; order decides ties between closing types.
PATTERN_FAMILIES: Tuple[Tuple[re.Pattern, LinkType], ...] = (
    (re.compile(r"#(\d+)"), LinkType.REFERENCE),
    (re.compile(rf"{_PREFIX}(\d+)", re.IGNORECASE), LinkType.REFERENCE),
    (re.compile(rf"\bcloses?\s+{_TARGET}", re.IGNORECASE), LinkType.CLOSES),
    (re.compile(rf"\bfixes?\s+{_TARGET}", re.IGNORECASE), LinkType.FIXES),
    (
        re.compile(rf"\bresolves?\s+{_TARGET}", re.IGNORECASE),
        LinkType.RESOLVES,
    ),
)


class TaskReference(NamedTuple):
    task_id: int
    link_type: LinkType
    reference_text: str


def _outranks(candidate: LinkType, current: LinkType) -> bool:
    return candidate.is_closing and not current.is_closing


def parse_references(text: Optional[str]) -> List[TaskReference]:
    """
    Extract task references from free text.

    Args:
        text: Commit message, PR title or PR body. ``None`` is treated as empty.

    Returns:
        One ``TaskReference`` per distinct task id, strongest link type kept.
    """
    if not text or not text.strip():
        return []

    found: Dict[int, TaskReference] = {}

    for pattern, link_type in PATTERN_FAMILIES:
        for match in pattern.finditer(text):
            task_id = int(match.group(1))
            if task_id <= 0:
                continue

            current = found.get(task_id)
            if current is None:
                found[task_id] = TaskReference(task_id, link_type, match.group(0))
                continue

            if current.link_type != link_type:
                logger.debug(
                    "Reference to task %s matched as %s and %s",
                    task_id,
                    current.link_type.value,
                    link_type.value,
                )
            if _outranks(link_type, current.link_type):
                found[task_id] = TaskReference(task_id, link_type, match.group(0))

    return list(found.values())


def parse_pull_request_references(
    title: Optional[str], body: Optional[str]
) -> List[TaskReference]:
    """Parse a PR title and body as one text so ids are deduplicated across both."""
    return parse_references("\n".join(part for part in (title, body) if part))
