from __future__ import annotations

import pytest

from deepdive.utils.template import TemplateError, render_template, template_pattern, template_variables


def test_render_substitutes_and_tolerates_spacing() -> None:
    assert render_template("Depth {{ depth }} for {{topic}}", {"depth": 2, "topic": "T"}) == "Depth 2 for T"


def test_unknown_variables_render_empty_unless_strict() -> None:
    assert render_template("a{{x}}b", {}) == "ab"
    with pytest.raises(TemplateError):
        render_template("a{{x}}b", {}, strict=True)


def test_template_variables() -> None:
    assert template_variables("{{topic}} {{ depth }} {{topic}}") == {"topic", "depth"}
    assert template_variables("") == set()


def test_template_pattern_recovers_the_rendered_variable() -> None:
    pattern = template_pattern("  Research {{topic}} at depth {{depth}}\n", capture="topic")
    rendered = render_template("Research {{topic}} at depth {{depth}}", {"topic": "a.b (c)", "depth": 2})

    m = pattern.fullmatch(rendered)
    assert m is not None
    assert m.group("topic") == "a.b (c)"
    assert pattern.fullmatch("Something else") is None
