"""Placeholder rendering and restricted expression evaluation."""

import pytest

from flowgate.errors import ExpressionError
from flowgate.expressions import evaluate, evaluate_bool
from flowgate.templating import get_path, render, render_value

SCOPE = {
    "trigger": {"user": {"name": "Ada", "tags": ["admin", "ops"]}, "count": 3},
    "search": {"results": [{"title": "a"}, {"title": "b"}], "count": 2},
    "result": {"count": 0, "status": "open"},
    "flag": True,
}


def test_get_path_walks_dicts_and_lists():
    assert get_path(SCOPE, "trigger.user.name") == "Ada"
    assert get_path(SCOPE, "search.results.1.title") == "b"
    assert get_path(SCOPE, "search.results.9.title", "none") == "none"
    assert get_path(SCOPE, "trigger.missing.deep") is None


def test_render_formats_values():
    assert render("Hello {{trigger.user.name}}!", SCOPE) == "Hello Ada!"
    assert render("{{ trigger.count }} items", SCOPE) == "3 items"
    assert render("tags={{trigger.user.tags}}", SCOPE) == 'tags=["admin", "ops"]'
    assert render("flag={{flag}}", SCOPE) == "flag=true"
    assert render("missing=[{{nope.nothing}}]", SCOPE) == "missing=[]"


def test_render_value_keeps_types_for_whole_placeholders():
    rendered = render_value(
        {"items": "{{search.results}}", "label": "n={{search.count}}", "raw": 5},
        SCOPE,
    )
    assert rendered == {"items": SCOPE["search"]["results"], "label": "n=2", "raw": 5}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("result.count > 0", False),
        ("search.count > 0", True),
        ("search.results.length == 2", True),
        ("len(search.results) >= 2 and flag", True),
        ("'admin' in trigger.user.tags", True),
        ("result.status === 'open' && !result.count", True),
        ("result.status !== 'open' || false", False),
        ("{{trigger.count}} * 2 == 6", True),
        ("trigger.missing > 1", False),
        ("lower(trigger.user.name) == 'ada'", True),
        ("result['status'] == 'open'", True),
    ],
)
def test_evaluate_bool(expression, expected):
    assert evaluate_bool(expression, SCOPE) is expected


def test_evaluate_returns_raw_values():
    assert evaluate("search.count + trigger.count", SCOPE) == 5
    assert evaluate("'yes' if flag else 'no'", SCOPE) == "yes"


def test_string_literals_are_not_rewritten():
    assert evaluate("'a && b'", {}) == "a && b"


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "__import__('os').system('true')",
        "trigger.user.name.upper()",
        "lambda: 1",
        "1 +",
        "[x for x in search.results]",
    ],
)
def test_rejected_expressions(expression):
    with pytest.raises(ExpressionError):
        evaluate(expression, SCOPE)
