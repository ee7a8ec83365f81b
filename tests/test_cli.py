import json

import pytest

from booksource import main as cli
from booksource.sources import eso


def _settings(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text(
        "[app]\n"
        f'store_path = "{(tmp_path / "store.json").as_posix()}"\n'
        f'logging_config = "{(tmp_path / "missing.yaml").as_posix()}"\n'
        "[fetch]\n"
        "max_pages = 3\n"
        "allow_file_urls = true\n",
        encoding="utf-8",
    )
    return path


def _site(tmp_path):
    site = tmp_path / "site"
    site.mkdir()
    (site / "search.html").write_text(
        '<ul><li class="book"><span class="name">三体</span><span class="author">刘慈欣</span>'
        '<a href="book.html">go</a></li></ul>',
        encoding="utf-8",
    )
    (site / "book.html").write_text(
        '<div id="list"><a href="c1.html">第一章</a><a href="c2.html">第二章</a></div>',
        encoding="utf-8",
    )
    (site / "c1.html").write_text('<div id="content"><p>正文</p></div>', encoding="utf-8")
    record = {
        "name": "Local",
        "host": site.as_uri(),
        "contentType": 1,
        "group": "local",
        "searchUrl": "/search.html?kw={{keyword}}",
        "searchList": ".book",
        "searchName": ".name@text",
        "searchAuthor": ".author@text",
        "searchResult": "a@href",
        "chapterList": "#list a",
        "chapterName": "@text",
        "chapterResult": "@href",
        "contentItems": "#content p@html",
    }
    sources = tmp_path / "sources.json"
    sources.write_text(json.dumps([record], ensure_ascii=False), encoding="utf-8")
    return site, sources


def _run(capsys, settings, *argv):
    cli.main(["--settings", str(settings), *argv])
    return json.loads(capsys.readouterr().out)


def test_import_search_and_read(tmp_path, capsys):
    settings = _settings(tmp_path)
    site, sources = _site(tmp_path)

    assert _run(capsys, settings, "import", str(sources)) == {"success": 1, "failed": 0, "errors": []}
    listed = _run(capsys, settings, "sources", "--group", "local")
    assert [row["name"] for row in listed] == ["Local"]
    source_id = listed[0]["id"]
    assert _run(capsys, settings, "sources", "--groups") == ["local"]

    books = _run(capsys, settings, "search", "三体")
    assert books[0]["name"] == "三体"
    assert books[0]["author"] == "刘慈欣"
    assert books[0]["book_url"] == (site / "book.html").as_uri()

    chapters = _run(capsys, settings, "chapters", "--source", source_id, "--book-url", books[0]["book_url"])
    assert [chapter["name"] for chapter in chapters] == ["第一章", "第二章"]

    content = _run(capsys, settings, "content", "--source", source_id, "--chapter-url", chapters[0]["url"])
    assert content["content"] == "<p>正文</p>"
    assert _run(capsys, settings, "cache", "stats")["count"] == 1
    assert _run(capsys, settings, "cache", "clear")["count"] == 0


def test_failed_fetch_reports_error_kind(tmp_path, capsys):
    settings = _settings(tmp_path)
    site, sources = _site(tmp_path)
    _run(capsys, settings, "import", str(sources))
    source_id = _run(capsys, settings, "sources")[0]["id"]

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings", str(settings), "content", "--source", source_id, "--chapter-url", (site / "c2.html").as_uri()])
    assert excinfo.value.code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["kind"] == "transport"
    assert payload["source_id"] == source_id


def test_toggle_export_and_delete(tmp_path, capsys):
    settings = _settings(tmp_path)
    _, sources = _site(tmp_path)
    _run(capsys, settings, "import", str(sources))
    source_id = _run(capsys, settings, "sources")[0]["id"]

    assert _run(capsys, settings, "disable", source_id, "missing") == {"updated": [source_id], "enabled": False}
    assert _run(capsys, settings, "sources")[0]["enabled"] is False

    output = tmp_path / "export.txt"
    assert _run(capsys, settings, "export", "--dialect", "eso", "--output", str(output)) == {"written": str(output)}
    line = output.read_text(encoding="utf-8")
    assert eso.decode(line)["enabled"] is False

    assert _run(capsys, settings, "delete", source_id) == {"deleted": 1}
    assert _run(capsys, settings, "sources") == []


def test_import_of_unknown_format_exits_non_zero(tmp_path, capsys):
    settings = _settings(tmp_path)
    garbage = tmp_path / "garbage.txt"
    garbage.write_text("not a source", encoding="utf-8")
    with pytest.raises(SystemExit):
        cli.main(["--settings", str(settings), "import", str(garbage)])
    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] == 0
    assert len(payload["errors"]) == 1


def test_seed_sources_installs_builtins(tmp_path, capsys):
    settings = _settings(tmp_path)
    seeded = _run(capsys, settings, "seed-sources")["seeded"]
    assert "builtin-biquge-xin" in seeded
    assert len(_run(capsys, settings, "sources")) == len(seeded)
