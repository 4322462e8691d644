from scraper.parsing.html_extractor import extract_text, extract_title, parse_document


def test_extract_title_handles_missing_and_whitespace():
    document = parse_document("<html><head><title>  Sample Page  </title></head><body></body></html>")
    assert extract_title(document) == "Sample Page"

    document_no_title = parse_document("<html><head></head><body></body></html>")
    assert extract_title(document_no_title) is None


def test_extract_text_strips_non_content_tags():
    document = parse_document(
        "<html><head><script>var x=1;</script><style>.cls{}</style></head>"
        "<body><p>Hello</p><noscript>ignore</noscript></body></html>"
    )
    assert extract_text(document) == "Hello"


def test_parse_document_supports_css_selectors():
    document = parse_document("<ul><li><a href='/a'>A</a></li><li><a>no href</a></li></ul>")

    assert [node["href"] for node in document.select("a[href]")] == ["/a"]


def test_parse_document_tolerates_broken_markup():
    document = parse_document("<div><a href='/ok'>unclosed <b>bold</div>")

    assert [node["href"] for node in document.select("a[href]")] == ["/ok"]
