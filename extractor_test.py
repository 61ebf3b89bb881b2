from __future__ import annotations

import unittest

from config import SiteContext
from extractor import AssetExtractor, PatternExtractor, extract_assets, extract_links


PAGE = """<html><head>
<link rel="stylesheet" href="https://example.com/wp-content/themes/t/style.css?ver=6.1">
<script src="/wp-includes/js/jquery/jquery.min.js"></script>
<script src="https://cdn.other.com/lib.js"></script>
<style>.hero{background:url('/assets/hero.jpg')}</style>
</head><body>
<img src="/img/logo.png" srcset="/img/logo-2x.png 2x, /img/logo-3x.png 3x">
<div style="background-image: url(/img/bg.webp)"></div>
<img data-src="/img/lazy.gif">
<picture><source srcset="/img/pic.webp 1x"></picture>
<img src="data:image/png;base64,AAAA">
<script>var s = document.createElement('script'); s.src = '/js/late.js'; fetch('/data/config.svg');</script>
<div data-settings='{"background_image":{"url":"https:\\/\\/example.com\\/wp-content\\/uploads\\/bg.jpg","id":5}}'></div>
<div data-bg="/img/fusion.png"></div>
</body></html>
"""


class ExtractAssetsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = SiteContext.from_site_url("https://example.com")

    def test_collects_assets_from_every_source(self) -> None:
        assets = extract_assets(PAGE, self.ctx)
        expected = [
            "/assets/hero.jpg",
            "/data/config.svg",
            "/img/bg.webp",
            "/img/fusion.png",
            "/img/lazy.gif",
            "/img/logo-2x.png",
            "/img/logo-3x.png",
            "/img/logo.png",
            "/img/pic.webp",
            "/js/late.js",
            "/wp-content/themes/t/style.css?ver=6.1",
            "/wp-content/uploads/bg.jpg",
            "/wp-includes/js/jquery/jquery.min.js",
        ]
        self.assertEqual(assets, expected)

    def test_result_is_sorted_and_unique(self) -> None:
        html = '<img src="/b.png"><img src="/a.png"><img src="/b.png">'
        self.assertEqual(extract_assets(html, self.ctx), ["/a.png", "/b.png"])

    def test_foreign_hosts_and_data_uris_are_dropped(self) -> None:
        html = (
            '<script src="https://cdn.other.com/wp-content/plugins/x/a.js"></script>'
            '<img src="data:image/gif;base64,R0lGOD">'
        )
        self.assertEqual(extract_assets(html, self.ctx), [])

    def test_malformed_and_empty_input(self) -> None:
        self.assertEqual(extract_assets("", self.ctx), [])
        self.assertEqual(extract_assets("<div data-settings='{not json'><img src=", self.ctx), [])

    def test_extra_extractor_is_used(self) -> None:
        class StaticExtractor:
            name = "static"

            def candidates(self, text: str) -> list:
                return ["/from-plugin.css"]

        extractor = AssetExtractor(extra_extractors=[StaticExtractor()])
        self.assertIn("/from-plugin.css", extractor.extract("<p>hi</p>", self.ctx))

    def test_failing_extractor_does_not_break_extraction(self) -> None:
        class BrokenExtractor:
            name = "broken"

            def candidates(self, text: str) -> list:
                raise ValueError("bad markup")

        extractor = AssetExtractor(extra_extractors=[BrokenExtractor()])
        with self.assertLogs("cdn_mirror.extractor", level="ERROR"):
            assets = extractor.extract('<img src="/a.png">', self.ctx)
        self.assertEqual(assets, ["/a.png"])

    def test_pattern_extractor_splits_srcset(self) -> None:
        import re

        extractor = PatternExtractor("srcset", re.compile(r"srcset=\"([^\"]+)\""), srcset=True)
        self.assertEqual(extractor.candidates('srcset="/a.png 1x, /b.png 2x"'), ["/a.png", "/b.png"])


class ExtractLinksTest(unittest.TestCase):
    def test_same_host_links_in_document_order(self) -> None:
        html = (
            '<a href="/about">About</a>'
            '<a href="https://example.com/contact#form">Contact</a>'
            '<a href="https://other.com/x">Other</a>'
            '<a href="mailto:a@example.com">Mail</a>'
            '<a href="javascript:void(0)">JS</a>'
            '<a href="#top">Top</a>'
            '<a href="/wp-admin/">Admin</a>'
            '<a href="/wp-json/wp/v2/posts">API</a>'
            '<a href="/about">Again</a>'
            '<a href="blog/post">Relative</a>'
        )
        links = extract_links(html, "https://example.com/news/", "example.com")
        self.assertEqual(
            links,
            [
                "https://example.com/about",
                "https://example.com/contact",
                "https://example.com/news/blog/post",
            ],
        )

    def test_excluded_links_are_skipped(self) -> None:
        html = '<a href="/a">A</a><a href="/b">B</a>'
        links = extract_links(html, "https://example.com/", "example.com", exclude={"https://example.com/a"})
        self.assertEqual(links, ["https://example.com/b"])

    def test_empty_markup(self) -> None:
        self.assertEqual(extract_links("", "https://example.com/", "example.com"), [])

    def test_malformed_href_is_skipped(self) -> None:
        html = '<a href="http://[oops/x">Broken</a><a href="/p1">One</a>'
        links = extract_links(html, "https://example.com/", "example.com")
        self.assertEqual(links, ["https://example.com/p1"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
