from __future__ import annotations

import unittest

from config import CdnSettings, ConfigurationError, parse_extensions, split_lines


class HelpersTest(unittest.TestCase):
    def test_split_lines(self) -> None:
        self.assertEqual(split_lines("/a\r\n\r\n /b \r/c\n"), ["/a", "/b", "/c"])
        self.assertEqual(split_lines(""), [])

    def test_parse_extensions(self) -> None:
        self.assertEqual(parse_extensions(" .CSS, js ,css,,"), ("css", "js"))
        self.assertEqual(parse_extensions(["PNG", ".svg"]), ("png", "svg"))


class CdnSettingsTest(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = CdnSettings.from_dict({})
        self.assertFalse(settings.enabled)
        self.assertEqual(settings.branch, "main")
        self.assertEqual(settings.file_types, "css,js")
        self.assertEqual(settings.cdn_base_url, "")

    def test_cdn_base_url(self) -> None:
        settings = CdnSettings.from_dict({"github_username": "u", "github_repository": "r", "github_branch": "dev"})
        self.assertEqual(settings.cdn_base_url, "https://cdn.jsdelivr.net/gh/u/r@dev/")

    def test_merged_sanitizes_and_preserves_existing_keys(self) -> None:
        settings = CdnSettings.from_dict(
            {
                "github_username": "u",
                "github_repository": "r",
                "github_token": "tok",
                "custom_urls": "/a.css",
                "legacy_key": "kept",
            }
        )
        merged = settings.merged(
            {
                "github_token": "********",
                "file_types": " .CSS, js ,css",
                "excluded_paths": "/a\r\n\r\n/b",
                "enabled": "1",
            }
        )
        self.assertEqual(merged.github_token, "tok")
        self.assertEqual(merged.file_types, "css,js")
        self.assertEqual(merged.excluded_paths, "/a\n/b")
        self.assertTrue(merged.enabled)
        self.assertEqual(merged.custom_urls, "/a.css")
        self.assertEqual(merged.github_username, "u")
        self.assertEqual(merged.to_dict()["legacy_key"], "kept")

        self.assertEqual(settings.merged({"github_token": "new"}).github_token, "new")
        self.assertEqual(settings.merged({"github_token": ""}).github_token, "tok")

    def test_merged_accepts_lists(self) -> None:
        merged = CdnSettings().merged({"custom_urls": ["/a.css", " ", "/b/*"], "file_types": ["PNG", "css"]})
        self.assertEqual(merged.custom_url_list(), ["/a.css", "/b/*"])
        self.assertEqual(merged.file_type_list(), ["png", "css"])

    def test_public_dict_masks_token(self) -> None:
        settings = CdnSettings.from_dict({"github_username": "u", "github_repository": "r", "github_token": "tok"})
        public = settings.public_dict()
        self.assertEqual(public["github_token"], "********")
        self.assertEqual(public["cdn_base_url"], "https://cdn.jsdelivr.net/gh/u/r@main/")
        self.assertEqual(CdnSettings().public_dict()["github_token"], "")

    def test_site_context(self) -> None:
        ctx = CdnSettings(excluded_paths="/wp-admin/*\n/private/*").site_context("https://example.com")
        self.assertEqual(ctx.host, "example.com")
        self.assertEqual(ctx.extensions, ("css", "js"))
        self.assertEqual(ctx.excluded_paths, ("/wp-admin/*", "/private/*"))
        with self.assertRaises(ConfigurationError):
            CdnSettings().site_context()


if __name__ == "__main__":
    unittest.main(verbosity=2)
