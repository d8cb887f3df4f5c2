from __future__ import annotations

import unittest

import spa_mirror as sm


class ClassifyReferenceTest(unittest.TestCase):
    base = "https://x.test/docs/page"

    def test_absolute_reference_kept(self) -> None:
        self.assertEqual(
            sm.classify_reference("https://x.test/app.js", self.base),
            "https://x.test/app.js",
        )

    def test_protocol_relative_gets_https(self) -> None:
        self.assertEqual(
            sm.classify_reference("//cdn.test/lib.js", self.base),
            "https://cdn.test/lib.js",
        )

    def test_root_relative_and_relative_resolution(self) -> None:
        self.assertEqual(
            sm.classify_reference("/static/a.css", self.base),
            "https://x.test/static/a.css",
        )
        self.assertEqual(
            sm.classify_reference("img/a.png", self.base),
            "https://x.test/docs/img/a.png",
        )
        self.assertEqual(
            sm.classify_reference("../up.png", "https://x.test/a/b/c.css"),
            "https://x.test/a/up.png",
        )

    def test_fragment_is_dropped_from_identity(self) -> None:
        self.assertEqual(
            sm.classify_reference("https://X.test/icons.svg#home", self.base),
            "https://x.test/icons.svg",
        )

    def test_ignored_forms(self) -> None:
        for ref in (
            "data:image/png;base64,AAAA",
            "DATA:text/plain,hi",
            "#top",
            "mailto:someone@x.test",
            "javascript:void(0)",
            "tel:+100",
            "",
            "   ",
        ):
            with self.subTest(ref=ref):
                self.assertIsNone(sm.classify_reference(ref, self.base))

    def test_never_raises(self) -> None:
        weird = [
            None,
            42,
            "http://[::1",
            "https://",
            "//",
            "\x00\x01",
            "::::",
            "http://x.test:99999/a",
            "%%%",
            "https://[bad/",
            "\\\\server\\share",
        ]
        for ref in weird:
            with self.subTest(ref=ref):
                result = sm.classify_reference(ref, self.base)
                self.assertTrue(result is None or result.startswith("http"))

    def test_broken_base_is_not_fatal(self) -> None:
        self.assertIsNone(sm.classify_reference("a.js", "http://[::1"))


class ContentTypeTest(unittest.TestCase):
    def test_extension_decides(self) -> None:
        cases = {
            "https://x.test/app.JS": sm.SCRIPT,
            "https://x.test/m.mjs?v=3": sm.SCRIPT,
            "https://x.test/a.css#x": sm.STYLESHEET,
            "https://x.test/data.json": sm.STRUCTURED,
            "https://x.test/img.png": sm.OTHER,
            "https://x.test/app.js.map": sm.OTHER,
            "https://x.test/api/items": sm.OTHER,
        }
        for url, kind in cases.items():
            with self.subTest(url=url):
                self.assertEqual(sm.content_type_for(url), kind)

    def test_specific_kind_is_never_replaced(self) -> None:
        self.assertEqual(sm.merge_kind(sm.OTHER, sm.SCRIPT), sm.SCRIPT)
        self.assertEqual(sm.merge_kind(sm.SCRIPT, sm.STYLESHEET), sm.SCRIPT)
        self.assertEqual(sm.merge_kind(sm.STRUCTURED, None), sm.STRUCTURED)
        self.assertEqual(sm.merge_kind(sm.OTHER, None), sm.OTHER)

    def test_binary_files_keep_other_kind(self) -> None:
        for url in ("https://x.test/logo.png", "https://x.test/f.woff2?v=1", "https://x.test/a.js.map"):
            with self.subTest(url=url):
                record = sm.AssetRecord(url, sm.content_type_for(url))
                self.assertFalse(record.observe(sm.SCRIPT))
                self.assertEqual(record.kind, sm.OTHER)
        record = sm.AssetRecord("https://x.test/bundle")
        self.assertTrue(record.observe(sm.SCRIPT))
        self.assertEqual(record.kind, sm.SCRIPT)


class OriginAndShapeTest(unittest.TestCase):
    def test_same_origin_uses_default_ports(self) -> None:
        self.assertTrue(sm.is_same_origin("https://x.test", "https://x.test:443/a"))
        self.assertFalse(sm.is_same_origin("https://x.test", "http://x.test/a"))
        self.assertFalse(sm.is_same_origin("https://x.test", "https://cdn.x.test/a"))

    def test_page_like(self) -> None:
        self.assertTrue(sm.is_page_like("https://x.test/"))
        self.assertTrue(sm.is_page_like("https://x.test/about.html"))
        self.assertTrue(sm.is_page_like("https://x.test/index.php?p=1"))
        self.assertFalse(sm.is_page_like("https://x.test/app.js"))

    def test_looks_like_path(self) -> None:
        self.assertTrue(sm.looks_like_path("./chunk"))
        self.assertTrue(sm.looks_like_path("chunk.abc123.js"))
        self.assertTrue(sm.looks_like_path("static/js/main"))
        self.assertTrue(sm.looks_like_path("https://cdn.test/x"))
        self.assertFalse(sm.looks_like_path("someVariable"))
        self.assertFalse(sm.looks_like_path("Loading..."))
        self.assertFalse(sm.looks_like_path("${base}/a.js"))

    def test_rooted_reference_shapes(self) -> None:
        self.assertTrue(sm.is_rooted_ref("https://x.test/a.js"))
        self.assertTrue(sm.is_rooted_ref("//cdn.test/a.js"))
        self.assertTrue(sm.is_rooted_ref("/a.js"))
        self.assertFalse(sm.is_rooted_ref("a.js"))
        self.assertFalse(sm.is_rooted_ref("../a.js"))


if __name__ == "__main__":
    unittest.main()
