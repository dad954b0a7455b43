import pytest

from sopsecrets.template import Jinja2Engine, TemplatingError, expand


def test_expand():
    assert expand("hello {{ hello }}\n\n   ", hello="world") == (
        "hello world\n\n   "
    )


def test_expand__block_tags_do_not_leave_blank_lines():
    assert expand("{% for x in xs %}\n  - {{ x }}\n{% endfor %}\n", xs=[1, 2]) == (
        "  - 1\n  - 2\n"
    )


def test_expand__undefined_variable_fails():
    with pytest.raises(TemplatingError) as e:
        Jinja2Engine().expand("{{ nope }}", {}, "env template")
    assert str(e.value) == (
        "Error while rendering env template: 'nope' is undefined"
    )
