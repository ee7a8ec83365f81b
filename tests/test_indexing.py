import pytest

from booksource.parse.indexing import IndexSpec, parse_array, split_segment

VALUES = list(range(10))


@pytest.mark.parametrize(
    "segment, expected",
    [
        ("li[0,2,4]", [0, 2, 4]),
        ("li[!0,2]", [1, 3, 4, 5, 6, 7, 8, 9]),
        ("li[2:8:2]", [2, 4, 6]),
        ("li[-3:]", [7, 8, 9]),
        ("li[:2]", [0, 1]),
        ("li[8:2:-2]", [8, 6, 4]),
        ("li[0:3,7]", [0, 1, 2, 7]),
        ("li[0,20]", [0]),
        ("li.-1", [9]),
        ("li.3", [3]),
        ("li", VALUES),
    ],
)
def test_index_grid(segment, expected):
    parsed = split_segment(segment)
    assert parsed.base == "li"
    assert parsed.apply(VALUES) == expected


def test_segment_without_suffix_is_not_narrowed():
    parsed = split_segment("ul.list li")
    assert parsed.base == "ul.list li"
    assert not parsed.narrowed
    assert split_segment("div.content").base == "div.content"


def test_bare_index_narrows_current_set():
    parsed = split_segment(".2")
    assert parsed.base == ""
    assert parsed.index == 2


def test_index_then_array():
    parsed = split_segment("class.item.3[0]")
    assert parsed.base == "class.item"
    assert parsed.index == 3
    assert parsed.apply(VALUES) == [3]


def test_invalid_arrays_are_rejected():
    assert parse_array("a,b") is None
    assert parse_array("1:2:0") is None
    assert parse_array("") is None
    assert split_segment("a[href]").base == "a[href]"


def test_exclusion_of_range():
    spec = IndexSpec(items=(slice(0, 5),), exclude=True)
    assert spec.apply(VALUES) == [5, 6, 7, 8, 9]
