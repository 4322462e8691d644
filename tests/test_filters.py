from scraper.utils.filters import is_followable_href


def test_is_followable_href_accepts_page_links():
    assert is_followable_href("/articles/intro")
    assert is_followable_href("https://example.com/page")
    assert is_followable_href("relative.html")


def test_is_followable_href_rejects_empty_and_script_targets():
    assert not is_followable_href(None)
    assert not is_followable_href("")
    assert not is_followable_href("   ")
    assert not is_followable_href("javascript:void(0)")
    assert not is_followable_href(" JavaScript:alert('x')")
    assert not is_followable_href("vbscript:msgbox")
