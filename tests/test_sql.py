import pytest

from peek_catalog.core.sql import SqlParams, and_join, escape_like, normalize_direction


def test_escape_like_escapes_wildcards_and_backslash():
    assert escape_like("100%_done") == r"100\%\_done"
    assert escape_like("a\\b") == "a\\\\b"


def test_params_allocate_sequential_names():
    params = SqlParams()
    assert params.add("x") == ":p0"
    assert params.add_list(["a", "b"]) == "(:p1, :p2)"
    assert params.values == {"p0": "x", "p1": "a", "p2": "b"}
    assert len(params) == 3


def test_params_prefix_keeps_names_disjoint():
    main, sort = SqlParams(), SqlParams("s")
    assert main.add(1) == ":p0"
    assert sort.add(2) == ":s0"


def test_add_list_rejects_empty():
    with pytest.raises(ValueError):
        SqlParams().add_list([])


def test_like_binds_escaped_substring_pattern():
    params = SqlParams()
    placeholder = params.like("50%")
    assert params.values[placeholder[1:]] == r"%50\%%"


def test_and_join():
    assert and_join([]) == "TRUE"
    assert and_join(["a = 1", "b = 2 OR c = 3"]) == "a = 1 AND (b = 2 OR c = 3)"


@pytest.mark.parametrize("raw,expected", [
    ("asc", "ASC"), ("DESC", "DESC"), (" desc ", "DESC"), (None, "DESC"), ("sideways", "DESC"),
])
def test_normalize_direction(raw, expected):
    assert normalize_direction(raw) == expected
