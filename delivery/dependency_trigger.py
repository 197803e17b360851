"""
Dependency Trigger

Finds stories unblocked by a completed story and reports circular
dependencies in the sprint's prerequisite graph.

- Epic and retrospective entries are not stories and are skipped.
- Cycle detection never aborts resolution; acyclic parts still resolve.
- READ-ONLY: never modifies the ledger.
"""

import logging
from typing import Dict, List, Optional

from .delivery_model import DependencyResolutionResult, WorkItem, WorkItemStatus
from .status_ledger import LedgerSnapshot, StatusLedger

logger = logging.getLogger("dependency_trigger")

# Statuses that mean a story was already picked up
STARTED_STATUSES = frozenset({WorkItemStatus.DONE, WorkItemStatus.IN_PROGRESS})


def is_story_key(key: str) -> bool:
    """Epics ("epic-3") and retrospectives ("epic-3-retrospective") are not stories."""
    return not key.startswith("epic-") and not key.endswith("-retrospective")


def build_dependency_graph(snapshot: LedgerSnapshot) -> Dict[str, WorkItem]:
    """Story key -> work item, in ledger order."""
    return {key: item for key, item in snapshot.items.items() if is_story_key(key)}


def detect_circular_dependencies(graph: Dict[str, WorkItem]) -> List[List[str]]:
    """
    Depth-first search for prerequisite cycles.

    Each cycle is reported from the first repeated key back to itself,
    e.g. ["a", "b", "c", "a"].
    """
    cycles: List[List[str]] = []
    visited = set()

    for root in graph:
        if root in visited:
            continue

        # explicit stack of prerequisite iterators; long chains must not recurse
        visited.add(root)
        path = [root]
        on_stack = {root}
        stack = [iter(_prerequisites(graph, root))]

        while stack:
            prereq = next(stack[-1], None)
            if prereq is None:
                stack.pop()
                on_stack.discard(path.pop())
                continue
            if prereq in on_stack:
                cycles.append(path[path.index(prereq):] + [prereq])
            elif prereq not in visited:
                visited.add(prereq)
                path.append(prereq)
                on_stack.add(prereq)
                stack.append(iter(_prerequisites(graph, prereq)))

    return cycles


def _prerequisites(graph: Dict[str, WorkItem], key: str) -> List[str]:
    item = graph.get(key)
    return item.prerequisite_keys if item else []


def _missing_prerequisites(item: WorkItem, graph: Dict[str, WorkItem]) -> List[str]:
    missing = []
    for prereq in item.prerequisite_keys:
        prereq_item = graph.get(prereq)
        if prereq_item is None or not prereq_item.is_done:
            missing.append(prereq)
    return missing


def resolve(snapshot: LedgerSnapshot, completed_key: str) -> DependencyResolutionResult:
    """
    Work out which dependents of completed_key can start now.

    A dependent is ready when every prerequisite is done and it has not been
    started yet. A dependent with unmet prerequisites is blocked.
    """
    graph = build_dependency_graph(snapshot)
    result = DependencyResolutionResult(cycles=detect_circular_dependencies(graph))

    for item in graph.values():
        if completed_key not in item.prerequisite_keys:
            continue

        missing = _missing_prerequisites(item, graph)
        if missing:
            result.blocked_keys.append(item.key)
            result.missing_prerequisites[item.key] = missing
        elif item.status not in STARTED_STATUSES:
            result.ready_keys.append(item.key)

    return result


def trigger_dependent_stories(
    ledger: StatusLedger,
    completed_key: str,
    snapshot: Optional[LedgerSnapshot] = None,
) -> DependencyResolutionResult:
    """Resolve dependents of a completed story against a fresh ledger read."""
    logger.info(f"[{completed_key}] Checking dependencies for completed story")

    snapshot = snapshot if snapshot is not None else ledger.load()
    result = resolve(snapshot, completed_key)

    if result.cycles:
        logger.warning(f"[{completed_key}] Circular dependencies detected")
        for cycle in result.cycles:
            logger.warning(f"[{completed_key}]   cycle: {' -> '.join(cycle)}")

    if not result.ready_keys and not result.blocked_keys:
        logger.info(f"[{completed_key}] No dependent stories waiting on this story")
        return result

    for key in result.ready_keys:
        logger.info(f"[{completed_key}] Story ready to start: {key}")
    for key in result.blocked_keys:
        missing = ", ".join(result.missing_prerequisites.get(key, []))
        logger.info(f"[{completed_key}] Story {key} still blocked by: {missing}")

    return result
