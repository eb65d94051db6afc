from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from variscout.engine.spc_types import CellValue, FilterAction

FILTER = "filter"
HIGHLIGHT = "highlight"

ROOT_ID = "root"


@dataclass(frozen=True)
class BreadcrumbItem:
    id: str
    label: str
    is_active: bool
    source: str


def generate_drill_id() -> str:
    return f"drill-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def get_drill_label(action: FilterAction) -> str:
    """'Point #k' for highlights, otherwise 'Factor: a, b +N'."""
    if action.type == HIGHLIGHT:
        return f"Point #{(action.row_index or 0) + 1}"

    name = action.factor or "Filter"
    if not action.values:
        return name
    shown = ", ".join(str(v) for v in action.values[:2])
    extra = f" +{len(action.values) - 2}" if len(action.values) > 2 else ""
    return f"{name}: {shown}{extra}"


def create_filter_action(
    type: str,
    source: str,
    values: Sequence[CellValue],
    factor: Optional[str] = None,
    row_index: Optional[int] = None,
) -> FilterAction:
    if type not in (FILTER, HIGHLIGHT):
        raise ValueError(f"Unknown drill action type '{type}'.")
    action = FilterAction(
        type=type,
        source=source,
        values=tuple(values),
        id=generate_drill_id(),
        timestamp=time.time() * 1000.0,
        label="",
        factor=factor,
        row_index=row_index,
    )
    return replace(action, label=get_drill_label(action))


def filter_stack_to_filters(stack: Sequence[FilterAction]) -> Dict[str, Tuple[CellValue, ...]]:
    """Active filters by factor. A later action on the same factor replaces an earlier one."""
    filters: Dict[str, Tuple[CellValue, ...]] = {}
    for action in stack:
        if action.type == FILTER and action.factor:
            filters[action.factor] = tuple(action.values)
    return filters


def find_filter_index(stack: Sequence[FilterAction], action_id: str) -> int:
    return next((i for i, a in enumerate(stack) if a.id == action_id), -1)


def pop_filter_stack_to(stack: Sequence[FilterAction], action_id: str) -> List[FilterAction]:
    """Drop everything after `action_id` (the action itself stays). Unknown ids leave the stack as is."""
    index = find_filter_index(stack, action_id)
    if index == -1:
        return list(stack)
    return list(stack[: index + 1])


def pop_filter_stack(stack: Sequence[FilterAction]) -> List[FilterAction]:
    return list(stack[:-1])


def push_filter_stack(stack: Sequence[FilterAction], action: FilterAction) -> List[FilterAction]:
    return [*stack, action]


def should_toggle_filter(
    stack: Sequence[FilterAction],
    factor: Optional[str],
    values: Sequence[CellValue],
    type: str = FILTER,
) -> bool:
    """True when the most recent filter on `factor` already selects exactly `values`."""
    if type != FILTER or not factor:
        return False

    existing = next((a for a in reversed(stack) if a.type == FILTER and a.factor == factor), None)
    if existing is None or len(existing.values) != len(values):
        return False

    current = {str(v) for v in existing.values}
    return all(str(v) in current for v in values)


def filter_stack_to_breadcrumbs(stack: Sequence[FilterAction], root_label: str = "All Data") -> List[BreadcrumbItem]:
    items = [BreadcrumbItem(ROOT_ID, root_label, is_active=len(stack) == 0, source="ichart")]
    last = len(stack) - 1
    for i, action in enumerate(stack):
        items.append(BreadcrumbItem(action.id, action.label, is_active=i == last, source=action.source))
    return items
