"""Unit tests for page summarisation (link counting and trafilatura metadata)."""

from __future__ import annotations

from unittest.mock import patch

from extraction_orchestrator.orchestrator.content_extractor import (
    PageSummary,
    categorize_link,
    count_links,
    discover_links,
    summarize_html,
)

_ARTICLE = """
<html lang="en">
  <head><title>Harbour expansion approved</title></head>
  <body>
    <nav><a href="/">Home</a> <a href="/news">News</a></nav>
    <article>
      <h1>Harbour expansion approved</h1>
      <p>{body}</p>
      <p>Read the <a href="https://council.example.org/minutes">council minutes</a>.</p>
    </article>
  </body>
</html>
""".format(body="The city council voted on Tuesday to expand the harbour. " * 30)


class TestCountLinks:
    def test_relative_and_absolute_links(self) -> None:
        assert count_links(_ARTICLE, "https://news.example.com/story") == 3

    def test_duplicates_and_fragments_collapse(self) -> None:
        html = '<a href="/a">1</a><a href="/a#top">2</a><a href="https://x.example/a">3</a>'
        assert count_links(html, "https://x.example/") == 1

    def test_non_navigable_schemes_skipped(self) -> None:
        html = (
            '<a href="mailto:desk@example.com">m</a>'
            '<a href="javascript:void(0)">j</a>'
            '<a href="tel:+4512345678">t</a>'
            '<a href="#section">s</a>'
            '<a>no href</a>'
        )
        assert count_links(html, "https://x.example/") == 0

    def test_malformed_html_does_not_raise(self) -> None:
        assert count_links("<a href='/x'><div><<<", "https://x.example/") == 1


class TestSummarizeHtml:
    def test_article_metadata(self) -> None:
        summary = summarize_html(_ARTICLE, "https://news.example.com/story")
        assert summary.links_found == 3
        assert summary.title == "Harbour expansion approved"
        assert summary.word_count is not None and summary.word_count > 100

    def test_empty_page_has_no_word_count(self) -> None:
        summary = summarize_html("<html><body></body></html>", "https://x.example/")
        assert summary.links_found == 0
        assert summary.word_count is None

    def test_trafilatura_failure_keeps_link_count(self) -> None:
        with patch(
            "extraction_orchestrator.orchestrator.content_extractor.trafilatura.extract",
            side_effect=RuntimeError("boom"),
        ):
            summary = summarize_html(_ARTICLE, "https://news.example.com/story")
        assert summary.links_found == 3
        assert summary.word_count is None


class TestPageSummaryAsMetadata:
    def test_drops_empty_fields(self) -> None:
        summary = PageSummary(links_found=2, title="T", language=None, word_count=10)
        assert summary.as_metadata() == {"title": "T", "word_count": 10}


class TestDiscoverLinks:
    def test_titles_prefer_attribute_then_text(self) -> None:
        html = (
            '<a href="/a" aria-label="Section A"><img src="a.png"></a>'
            '<a href="/b"></a><a href="/b">  Second\tmention </a>'
        )
        links = discover_links(html, "https://x.example/")
        assert [(link.url, link.title) for link in links] == [
            ("https://x.example/a", "Section A"),
            ("https://x.example/b", "Second mention"),
        ]

    def test_categories(self) -> None:
        base = "https://news.example.com/front"
        assert categorize_link("https://NEWS.example.com/a", base) == "internal"
        assert categorize_link("https://cdn.example.com/a", base) == "external"
        assert categorize_link("https://news.example.com/data/table.csv", base) == "file"
        assert categorize_link("https://news.example.com/v1.2/page", base) == "internal"
