from pathlib import Path

from booksource.parse.extractor import evaluate, evaluate_all, parse_document
from booksource.parse.grammar import parse_rule
from booksource.parse.rules import Dialect

FIXTURES = Path(__file__).parent / "fixtures" / "html"


def _doc():
    return parse_document((FIXTURES / "chapter_list.html").read_text(encoding="utf-8"))


def test_or_returns_first_non_empty_alternative():
    doc = _doc()
    assert evaluate(doc, parse_rule("class.missing@text||tag.title@text")) == "目录"
    assert evaluate(doc, parse_rule("tag.title@text||li.0@a@text")) == "目录"
    assert evaluate(doc, parse_rule("class.missing@text||id.nope@text")) is None


def test_or_over_lists():
    doc = _doc()
    values = evaluate_all(doc, parse_rule("class.missing@text||li[0,1]@a@text"))
    assert values == ["Chapter 1", "Chapter 2"]


def test_and_pipes_into_script():
    rule = parse_rule("#list@li.0@a@href&&@js:result.replace('.html','')")
    assert evaluate(_doc(), rule) == "/c/1"


def test_and_reparses_markup_between_stages():
    assert evaluate(_doc(), parse_rule("#list@html&&li.2@a@text")) == "Chapter 3"


def test_and_stops_on_empty_stage():
    assert evaluate(_doc(), parse_rule("class.missing@html&&li@text")) is None
    assert evaluate_all(_doc(), parse_rule("class.missing@html&&li@text")) == []


def test_and_over_lists_flattens_stage_outputs():
    values = evaluate_all(_doc(), parse_rule("li[0,1]@html&&a@href"))
    assert values == ["/c/1.html", "/c/2.html"]


def test_eso_combinators():
    doc = _doc()
    rule = parse_rule("#missing a@href||#list li:first-child a@href", Dialect.ESO)
    assert evaluate(doc, rule) == "/c/1.html"
