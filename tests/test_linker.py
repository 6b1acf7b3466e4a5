"""
tests/test_linker.py
"""
from __future__ import annotations

import re

import pytest

from isuda.wiki import htmlify, keyword_href, keyword_pattern, placeholder_for


def _anchors(html: str) -> list[tuple[str, str]]:
    """[(href, text), …] for every anchor in *html*."""
    return re.findall(r'<a href="([^"]*)">(.*?)</a>', html)


# ───────────────────────── matching ───────────────────────────────────
def test_longest_keyword_wins():
    html = htmlify("ab", ["a", "ab"])
    assert html == '<a href="/keyword/ab">ab</a>'


def test_longest_wins_regardless_of_input_order():
    assert htmlify("ab", ["ab", "a"]) == htmlify("ab", ["a", "ab"])


def test_single_anchor_for_single_occurrence():
    html = htmlify("I have a cat", ["cat"])
    assert _anchors(html) == [("/keyword/cat", "cat")]
    assert html == 'I have a <a href="/keyword/cat">cat</a>'


def test_repeated_keyword_links_every_occurrence():
    html = htmlify("cat and cat", ["cat"])
    assert _anchors(html) == [("/keyword/cat", "cat")] * 2


def test_keyword_inside_anchor_text_is_not_relinked():
    # "a" is a keyword *and* a substring of the "cat" anchor + its href
    html = htmlify("a cat", ["cat", "a"])
    assert html == '<a href="/keyword/a">a</a> <a href="/keyword/cat">cat</a>'


def test_regex_metacharacters_are_literal():
    html = htmlify("a+b and aab", ["a+b"])
    assert _anchors(html) == [("/keyword/a%2Bb", "a+b")]
    assert html.endswith(" and aab")


def test_empty_keyword_is_ignored():
    assert keyword_pattern(["", ""]) is None
    assert htmlify("abc", [""]) == "abc"


def test_render_is_deterministic():
    text = "dogs & cats <3\nhot dog"
    kws = ["dog", "cat", "hot dog"]
    assert htmlify(text, kws) == htmlify(text, kws)


# ───────────────────────── escaping ───────────────────────────────────
def test_script_is_escaped_without_keywords():
    html = htmlify("<script>", [])
    assert "&lt;script&gt;" in html
    assert "<script>" not in html


def test_markup_keyword_is_escaped_inside_anchor():
    html = htmlify("x <b> y", ["<b>"])
    assert html == 'x <a href="/keyword/%3Cb%3E">&lt;b&gt;</a> y'


def test_ampersand_keyword():
    html = htmlify("R&D budget", ["R&D"])
    assert html == '<a href="/keyword/R%26D">R&amp;D</a> budget'


def test_quotes_are_escaped():
    assert htmlify('say "hi"', []) == "say &quot;hi&quot;"


def test_newlines_become_breaks():
    assert htmlify("a\nb", []) == "a<br />\nb"


@pytest.mark.parametrize("content", [None, ""])
def test_empty_content(content):
    assert htmlify(content, ["cat"]) == ""


# ───────────────────────── urls + placeholders ────────────────────────
@pytest.mark.parametrize(
    "keyword, href",
    [
        ("cat", "/keyword/cat"),
        ("two words", "/keyword/two%20words"),
        ("a/b", "/keyword/a%2Fb"),
        ("q?#", "/keyword/q%3F%23"),
        ("猫", "/keyword/%E7%8C%AB"),
    ],
)
def test_keyword_href(keyword, href):
    assert keyword_href(keyword) == href


def test_custom_href():
    html = htmlify("cat", ["cat"], href=lambda k: f"https://wiki.test/k/{k}")
    assert html == '<a href="https://wiki.test/k/cat">cat</a>'


def test_placeholder_is_stable_and_unique():
    assert placeholder_for("cat") == placeholder_for("cat")
    assert placeholder_for("cat") != placeholder_for("Cat")
    assert placeholder_for("cat").startswith("isuda_")
    assert len(placeholder_for("cat")) == len("isuda_") + 40


def test_case_sensitive_matching():
    html = htmlify("Cat cat", ["cat"])
    assert html == 'Cat <a href="/keyword/cat">cat</a>'
