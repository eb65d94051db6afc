# tests/test_navigation.py

import pytest

from variscout.engine.navigation import (
    FILTER,
    HIGHLIGHT,
    ROOT_ID,
    create_filter_action,
    filter_stack_to_breadcrumbs,
    filter_stack_to_filters,
    find_filter_index,
    get_drill_label,
    pop_filter_stack,
    pop_filter_stack_to,
    push_filter_stack,
    should_toggle_filter,
)


def test_filter_action_labels():
    single = create_filter_action(FILTER, "boxplot", ["A"], factor="Machine")
    several = create_filter_action(FILTER, "pareto", ["A", "B", "C", "D"], factor="Machine")
    point = create_filter_action(HIGHLIGHT, "ichart", [12.5], row_index=3)

    assert single.label == "Machine: A"
    assert several.label == "Machine: A, B +2"
    assert point.label == "Point #4"
    assert get_drill_label(single) == single.label


def test_filter_action_fields():
    action = create_filter_action(FILTER, "boxplot", ["A", "B"], factor="Machine")
    assert action.values == ("A", "B")
    assert action.id.startswith("drill-")
    assert action.timestamp > 0
    other = create_filter_action(FILTER, "boxplot", ["A", "B"], factor="Machine")
    assert other.id != action.id


def test_unknown_action_type_raises():
    with pytest.raises(ValueError):
        create_filter_action("zoom", "ichart", [1])


def test_stack_to_filters_later_action_wins_and_highlights_are_ignored():
    stack = [
        create_filter_action(FILTER, "boxplot", ["A"], factor="Machine"),
        create_filter_action(HIGHLIGHT, "ichart", [3.0], row_index=0),
        create_filter_action(FILTER, "pareto", ["Night"], factor="Shift"),
        create_filter_action(FILTER, "boxplot", ["B", "C"], factor="Machine"),
    ]
    assert filter_stack_to_filters(stack) == {"Machine": ("B", "C"), "Shift": ("Night",)}


def test_push_and_pop():
    a = create_filter_action(FILTER, "boxplot", ["A"], factor="Machine")
    b = create_filter_action(FILTER, "pareto", ["Night"], factor="Shift")
    c = create_filter_action(FILTER, "pareto", ["X"], factor="Line")

    stack = push_filter_stack(push_filter_stack([], a), b)
    assert stack == [a, b]
    assert pop_filter_stack(stack) == [a]
    assert pop_filter_stack([]) == []

    full = push_filter_stack(stack, c)
    assert find_filter_index(full, b.id) == 1
    assert find_filter_index(full, "nope") == -1
    assert pop_filter_stack_to(full, a.id) == [a]
    assert pop_filter_stack_to(full, "nope") == full


def test_should_toggle_filter():
    stack = [create_filter_action(FILTER, "boxplot", ["A", "B"], factor="Machine")]

    assert should_toggle_filter(stack, "Machine", ["B", "A"])
    assert not should_toggle_filter(stack, "Machine", ["A"])
    assert not should_toggle_filter(stack, "Shift", ["A", "B"])
    assert not should_toggle_filter(stack, "Machine", ["A", "B"], type=HIGHLIGHT)
    assert not should_toggle_filter([], "Machine", ["A"])


def test_breadcrumbs():
    root_only = filter_stack_to_breadcrumbs([])
    assert len(root_only) == 1
    assert root_only[0].id == ROOT_ID
    assert root_only[0].label == "All Data"
    assert root_only[0].is_active

    a = create_filter_action(FILTER, "boxplot", ["A"], factor="Machine")
    b = create_filter_action(FILTER, "pareto", ["Night"], factor="Shift")
    crumbs = filter_stack_to_breadcrumbs([a, b], root_label="Everything")
    assert [c.label for c in crumbs] == ["Everything", "Machine: A", "Shift: Night"]
    assert [c.is_active for c in crumbs] == [False, False, True]
    assert crumbs[2].source == "pareto"
