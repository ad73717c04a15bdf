from bs4 import BeautifulSoup, Comment, NavigableString
import pytest

from chapter_splitter import *


CHAPTER = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><title>Chapter 1</title></head>
<body>
  <div class="chapter">
    <h1>Chapter One</h1>
    <p>First paragraph.</p>
    <div class="figure"><img src="../Images/fig1.jpg" alt=""/></div>
    <p>Second paragraph.</p>
  </div>
</body>
</html>"""

TEXT_ONLY_CHAPTER = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
<head><title>Chapter 2</title></head>
<body>
  <h1>Chapter Two</h1>
  <p>Only words here.</p>
  <p>And more words.</p>
</body>
</html>"""

MALFORMED_CHAPTER = (
    '<html><head><title>Broken</title></head><body>'
    '<p>Intro&nbsp;text<br></p><img src="a.png"><p>Outro'
    '</body></html>'
)

ENTITY_CHAPTER = """<?xml version="1.0" encoding="utf-8"?>
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">
<html xmlns="http://www.w3.org/1999/xhtml" xml:lang="en" lang="en">
<head><title>Entities</title><link rel="stylesheet" type="text/css" href="../Styles/book.css"/></head>
<body>
  <p>Caf&eacute; &mdash; na&iuml;ve&hellip;</p>
  <img src="../Images/fig1.jpg" alt=""/>
  <p>Fish &amp; chips&nbsp;tonight.</p>
</body>
</html>"""


def body_text(document):
    soup = BeautifulSoup(document, "html.parser")
    return "".join(soup.body.get_text().split())


def first_tag(html):
    return BeautifulSoup(html, "html.parser").find()


def test_classify_node_text():
    assert classify_node(first_tag("<p>Hello</p>")) == "text"
    assert classify_node(first_tag('<div><p>Hi</p><img src="a.png"/></div>')) == "text"


def test_classify_node_image():
    assert classify_node(first_tag('<img src="a.png"/>')) == "image"
    assert classify_node(first_tag("<svg><rect/></svg>")) == "image"
    assert classify_node(first_tag('<div class="figure"><img src="a.png"/></div>')) == "image"
    assert classify_node(first_tag('<figure><img src="a.png"/><figcaption>  </figcaption></figure>')) == "image"


def test_classify_node_svg_text_does_not_count():
    html = '<div><svg><text>Label</text></svg></div>'
    assert classify_node(first_tag(html)) == "image"


def test_classify_node_whitespace():
    assert classify_node(first_tag("<p>   </p>")) == "whitespace"
    assert classify_node(first_tag("<br/>")) == "whitespace"
    assert classify_node(NavigableString("  \n ")) == "whitespace"
    assert classify_node(Comment("not content")) == "whitespace"


def test_classify_node_text_node():
    assert classify_node(NavigableString("loose text")) == "text"


def test_classify_node_leaves_original_untouched():
    tag = first_tag('<div><img src="a.png"/>caption</div>')
    classify_node(tag)
    assert tag.find("img") is not None


def test_locate_content_root_unwraps_single_div():
    soup = BeautifulSoup("<body>\n<div id='wrap'><p>a</p><p>b</p></div>\n</body>", "html.parser")
    assert locate_content_root(soup.body)["id"] == "wrap"


def test_locate_content_root_keeps_body():
    soup = BeautifulSoup("<body><div><p>a</p></div><p>b</p></body>", "html.parser")
    assert locate_content_root(soup.body) is soup.body

    soup = BeautifulSoup("<body><section><p>a</p></section></body>", "html.parser")
    assert locate_content_root(soup.body) is soup.body


def test_locate_content_root_without_body():
    assert locate_content_root(None) is None


def test_group_nodes_by_type():
    soup = BeautifulSoup(
        '<body><h1>T</h1><p>a</p><img src="1.png"/><img src="2.png"/><p>b</p></body>',
        "html.parser"
    )
    blocks = group_nodes_by_type(collect_content_nodes(soup.body))
    assert [b.content_type for b in blocks] == ["text", "image", "text"]
    assert [len(b.nodes) for b in blocks] == [2, 2, 1]


def test_group_nodes_by_type_keeps_whitespace_elements():
    soup = BeautifulSoup(
        '<body><a id="start"></a><p>a</p><br/><img src="1.png"/></body>',
        "html.parser"
    )
    blocks = group_nodes_by_type(collect_content_nodes(soup.body))
    assert [b.content_type for b in blocks] == ["text", "image"]
    assert [n.name for n in blocks[0].nodes] == ["a", "p", "br"]


def test_needs_splitting():
    assert needs_splitting(CHAPTER)
    assert not needs_splitting(TEXT_ONLY_CHAPTER)


def test_needs_splitting_small_documents():
    assert not needs_splitting("<html><body></body></html>")
    assert not needs_splitting("<html><body><p>One</p></body></html>")
    assert not needs_splitting('<html><body><img src="a.png"/></body></html>')
    assert not needs_splitting("<html><body>\n  \n</body></html>")


def test_needs_splitting_falls_back_on_malformed_markup():
    assert needs_splitting(MALFORMED_CHAPTER)


def test_parse_chapter_prefers_xml():
    soup = parse_chapter(CHAPTER)
    assert soup.is_xml


def test_parse_chapter_falls_back_to_html(caplog):
    soup = parse_chapter(MALFORMED_CHAPTER)
    assert not soup.is_xml
    assert soup.body is not None
    assert "falling back" in caplog.text


def test_resolve_named_entities():
    assert resolve_named_entities("<p>Caf&eacute; &amp; &lt;tea&gt;</p>") == "<p>Caf&#233; &amp; &lt;tea&gt;</p>"
    assert resolve_named_entities("<p>&AMP;&nbsp;</p>") == "<p>&#38;&#160;</p>"
    assert resolve_named_entities("<p>&madeup;</p>") is None


def test_parse_chapter_resolves_html_entities():
    soup = parse_chapter(ENTITY_CHAPTER)
    assert soup.is_xml
    assert soup.find("p").get_text() == "Café — naïve…"


def test_parse_chapter_unknown_entity_falls_back_to_html(caplog):
    chapter = ENTITY_CHAPTER.replace("&mdash;", "&madeup;")
    soup = parse_chapter(chapter)
    assert not soup.is_xml
    assert "Café" in soup.find("p").get_text()
    assert "madeup" in caplog.text


def test_split_chapter_content():
    parts = split_chapter_content(CHAPTER)
    assert len(parts) == 3

    assert "Chapter One" in parts[0] and "First paragraph." in parts[0]
    assert "fig1.jpg" not in parts[0]
    assert "fig1.jpg" in parts[1]
    assert "paragraph" not in parts[1]
    assert "Second paragraph." in parts[2]
    assert "First paragraph." not in parts[2]


def test_split_chapter_content_keeps_document_shell():
    for part in split_chapter_content(CHAPTER):
        assert part.startswith("<?xml")
        assert 'xmlns="http://www.w3.org/1999/xhtml"' in part
        assert 'xmlns:epub="http://www.idpf.org/2007/ops"' in part
        assert "<title>Chapter 1</title>" in part
        assert 'class="chapter"' in part


def test_split_chapter_content_preserves_text():
    parts = split_chapter_content(CHAPTER)
    assert "".join(body_text(p) for p in parts) == body_text(CHAPTER)


def test_split_parts_are_not_split_again():
    for part in split_chapter_content(CHAPTER):
        assert not needs_splitting(part)


def test_split_chapter_content_nothing_to_split():
    assert split_chapter_content(TEXT_ONLY_CHAPTER) == []


def test_split_chapter_content_keeps_anchor():
    chapter = (
        '<html xmlns="http://www.w3.org/1999/xhtml"><head><title>x</title></head><body>'
        '<a id="start"/><p>Text</p><img src="a.png" alt=""/>'
        '</body></html>'
    )
    parts = split_chapter_content(chapter)
    assert len(parts) == 2
    assert 'id="start"' in parts[0]
    assert 'id="start"' not in parts[1]


def test_split_chapter_content_malformed():
    parts = split_chapter_content(MALFORMED_CHAPTER)
    assert len(parts) == 3
    assert "Intro" in parts[0]
    assert "a.png" in parts[1]
    assert "Outro" in parts[2]
    assert all("<title>Broken</title>" in p for p in parts)


def test_split_chapter_content_keeps_entity_text():
    parts = split_chapter_content(ENTITY_CHAPTER)
    assert len(parts) == 3
    assert "Café — naïve…" in parts[0]
    assert "Fish &amp; chips\u00a0tonight." in parts[2]
    assert "".join(body_text(p) for p in parts) == body_text(ENTITY_CHAPTER)


def test_split_chapter_content_keeps_attribute_order():
    parts = split_chapter_content(ENTITY_CHAPTER)
    for part in parts:
        assert '<link rel="stylesheet" type="text/css" href="../Styles/book.css"/>' in part
    assert '<img src="../Images/fig1.jpg" alt=""/>' in parts[1]


def test_generate_split_filenames():
    assert generate_split_filenames("ch1.xhtml", 3) == ["ch1.xhtml", "ch1_-1.xhtml", "ch1_-2.xhtml"]
    assert generate_split_filenames("ch1", 2) == ["ch1", "ch1_-1"]
    assert generate_split_filenames("OEBPS/Text/ch1.xhtml", 2) == ["OEBPS/Text/ch1.xhtml", "OEBPS/Text/ch1_-1.xhtml"]
    assert generate_split_filenames("ch1.xhtml", 1) == ["ch1.xhtml"]


def test_is_exempt_filename():
    assert is_exempt_filename("nav.xhtml")
    assert is_exempt_filename("OEBPS/Text/nav.xhtml")
    assert is_exempt_filename("OEBPS\\Text\\toc.xhtml")
    assert is_exempt_filename("cover.xhtml")
    assert not is_exempt_filename("chapter1.xhtml")
    assert not is_exempt_filename("nav.html")


def test_is_exempt_filename_custom_list():
    assert is_exempt_filename("Text/preface.xhtml", ["preface.xhtml"])
    assert not is_exempt_filename("Text/nav.xhtml", ["preface.xhtml"])


def test_process_chapter_exempt_skips_analysis(monkeypatch):
    def fail(*a, **k): raise AssertionError("should not parse")
    monkeypatch.setattr("chapter_splitter.parse_chapter", fail)

    result = process_chapter(CHAPTER, "OEBPS/Text/nav.xhtml")
    assert result.success and result.skipped
    assert result.reason == "exempt_filename"
    assert result.original_content == CHAPTER


def test_process_chapter_no_split_needed():
    result = process_chapter(TEXT_ONLY_CHAPTER, "Text/ch2.xhtml")
    assert result.success and result.skipped
    assert result.reason == "no_split_needed"
    assert result.original_content == TEXT_ONLY_CHAPTER
    assert result.contents == []


def test_process_chapter_split():
    result = process_chapter(CHAPTER, "Text/ch1.xhtml")
    assert result.success and not result.skipped
    assert result.split_count == 3
    assert result.filenames == ["Text/ch1.xhtml", "Text/ch1_-1.xhtml", "Text/ch1_-2.xhtml"]
    assert result.original_filename == "Text/ch1.xhtml"


def test_process_chapter_split_not_beneficial(monkeypatch):
    monkeypatch.setattr("chapter_splitter.build_parts", lambda soup, blocks: ["<html/>"])
    result = process_chapter(CHAPTER, "Text/ch1.xhtml")
    assert result.success and result.skipped
    assert result.reason == "split_not_beneficial"


def test_process_chapter_failure_returns_original(monkeypatch):
    def boom(*a, **k): raise RuntimeError("boom")
    monkeypatch.setattr("chapter_splitter.build_parts", boom)

    result = process_chapter(CHAPTER, "Text/ch1.xhtml")
    assert not result.success
    assert result.error == "boom"
    assert result.original_content == CHAPTER
