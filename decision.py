import re
from typing import Iterable, List, Optional, Tuple, Any

DEFAULT_MILESTONE_PREFIX = "v"

CLOSING_KEYWORD = re.compile(r"^(?:[fF]ix(?:e|es|ed)?|[cC]los(?:e|es|ed)|[rR]esolv(?:e|es|ed))$")
ISSUE_REFERENCE = re.compile(r"^#([0-9]+)")
VERSION = re.compile(r"([0-9])\.([0-9]+)\.([0-9]+)")

Version = Tuple[int, int, int]

def parse_milestone_version(title: str, prefix: str = DEFAULT_MILESTONE_PREFIX) -> Optional[Version]:
    if not title or not prefix or not title.startswith(prefix):
        return None
    m = VERSION.fullmatch(title[len(prefix):])
    if not m:
        return None
    return (int(m.group(1)), int(m.group(2)), int(m.group(3)))

def is_closed(state: Optional[str]) -> bool:
    return (state or "").lower() == "closed"

def select_lowest_milestone(milestones: Iterable[Any], prefix: str = DEFAULT_MILESTONE_PREFIX) -> Optional[Any]:
    """Return the open milestone with the lowest version title, or None.

    Milestones only need ``title`` and ``state`` attributes. When two titles carry the
    same version, the one listed first wins.
    """
    best = None
    best_version: Optional[Version] = None
    for milestone in milestones:
        if is_closed(milestone.state):
            continue
        version = parse_milestone_version(milestone.title, prefix)
        if version is None:
            continue
        if best_version is None or version < best_version:
            best, best_version = milestone, version
    return best

def find_linked_issue(body: Optional[str]) -> Optional[int]:
    if not body:
        return None
    tokens: List[str] = body.split()
    for i, token in enumerate(tokens):
        if not CLOSING_KEYWORD.match(token):
            continue
        # Keyword as the last token has nothing to reference.
        if i + 1 >= len(tokens):
            break
        m = ISSUE_REFERENCE.match(tokens[i + 1])
        if m:
            return int(m.group(1))
    return None

def should_apply_milestone(state: Optional[str], current_milestone: Optional[Any]) -> Tuple[bool, str]:
    if current_milestone is not None:
        title = getattr(current_milestone, "title", None) or "?"
        return (False, f"already has milestone {title}")
    if not is_closed(state):
        return (False, f"is {state or 'unknown'}, not closed")
    return (True, "closed without milestone")
