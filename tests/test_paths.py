from __future__ import annotations

import posixpath
import unittest
from urllib.parse import unquote

import spa_mirror as sm


class DefaultPathTest(unittest.TestCase):
    def test_url_path_is_kept(self) -> None:
        self.assertEqual(
            sm.PathAllocator.default_path("https://x.test/static/js/app.js"),
            "static/js/app.js",
        )

    def test_query_hash_before_extension(self) -> None:
        h = sm.short_h("v=2")
        self.assertEqual(
            sm.PathAllocator.default_path("https://x.test/app.js?v=2"), f"app-{h}.js"
        )

    def test_query_hash_appended_without_extension(self) -> None:
        h = sm.short_h("a=1")
        self.assertEqual(sm.PathAllocator.default_path("https://x.test/img?a=1"), f"img-{h}")

    def test_hash_is_stable(self) -> None:
        self.assertEqual(sm.short_h("a=1"), sm.short_h("a=1"))
        self.assertNotEqual(sm.short_h("a=1"), sm.short_h("a=2"))
        self.assertEqual(len(sm.short_h("anything")), 8)

    def test_directory_urls_get_index(self) -> None:
        self.assertEqual(sm.PathAllocator.default_path("https://x.test/api/"), "api/index")

    def test_segments_are_made_safe(self) -> None:
        self.assertEqual(
            sm.PathAllocator.default_path("https://x.test/img/my%20file.png"),
            "img/my file.png",
        )
        self.assertEqual(sm.PathAllocator.default_path("https://x.test/.env"), "_env")
        self.assertEqual(
            sm.PathAllocator.default_path("https://x.test/%2e%2e/secret.txt"),
            "_/secret.txt",
        )
        self.assertEqual(
            sm.PathAllocator.default_path("https://x.test/a%2Fb:c.js"), "a_b_c.js"
        )


class AllocatorTest(unittest.TestCase):
    def test_allocation_is_idempotent(self) -> None:
        alloc = sm.PathAllocator()
        first = alloc.allocate("https://x.test/app.js")
        alloc.allocate("https://cdn.test/app.js")
        self.assertEqual(alloc.allocate("https://x.test/app.js"), first)
        self.assertEqual(alloc.get("https://x.test/app.js"), first)
        self.assertEqual(alloc.owner(first), "https://x.test/app.js")

    def test_collisions_get_numeric_suffix(self) -> None:
        alloc = sm.PathAllocator()
        self.assertEqual(alloc.allocate("https://x.test/lib.js"), "lib.js")
        self.assertEqual(alloc.allocate("https://cdn.test/lib.js"), "lib-1.js")
        self.assertEqual(alloc.allocate("https://other.test/lib.js"), "lib-2.js")
        self.assertEqual(alloc.allocate("https://x.test/LICENSE"), "LICENSE")
        self.assertEqual(alloc.allocate("https://cdn.test/LICENSE"), "LICENSE-1")

    def test_distinct_urls_never_share_a_path(self) -> None:
        alloc = sm.PathAllocator()
        urls = [
            "https://x.test/a.js",
            "https://x.test/a.js?v=1",
            "https://x.test/a.js?v=2",
            "https://cdn.test/a.js",
            "https://cdn.test/a.js?v=1",
            "https://x.test/a-1.js",
            "https://x.test/img",
            "https://x.test/img?a=1",
            "https://x.test/img?a=2",
            "https://x.test/img/",
            "https://x.test/img/x.png",
        ]
        paths = [alloc.allocate(u) for u in urls]
        self.assertEqual(len(set(paths)), len(urls))
        self.assertEqual(len(alloc), len(urls))

    def test_file_and_directory_clash(self) -> None:
        alloc = sm.PathAllocator()
        self.assertEqual(alloc.allocate("https://x.test/api"), "api")
        self.assertEqual(alloc.allocate("https://x.test/api/users.json"), "api-1/users.json")

        alloc = sm.PathAllocator()
        self.assertEqual(alloc.allocate("https://x.test/api/users.json"), "api/users.json")
        self.assertEqual(alloc.allocate("https://x.test/api"), "api-1")

    def test_reserved_paths_are_skipped(self) -> None:
        alloc = sm.PathAllocator()
        self.assertTrue(alloc.reserve("index.html", "https://x.test/"))
        self.assertTrue(alloc.reserve("index.html", "https://x.test/"))
        self.assertFalse(alloc.reserve("index.html", "https://x.test/other"))
        self.assertEqual(alloc.allocate("https://cdn.test/index.html"), "index-1.html")

    def test_preferred_path(self) -> None:
        alloc = sm.PathAllocator()
        alloc.allocate("https://x.test/js/app.js")
        self.assertEqual(
            alloc.allocate("https://x.test/maps/app.map", preferred="js/app.js.map"),
            "js/app.js.map",
        )
        self.assertEqual(
            alloc.allocate("https://x.test/other.map", preferred="js/app.js.map"),
            "js/app.js-1.map",
        )


class RouteFilenameTest(unittest.TestCase):
    def test_routes(self) -> None:
        cases = {
            "/": "index.html",
            "/about": "about.html",
            "/foo/bar": "foo/bar.html",
            "/docs/": "docs.html",
            "/legal.html": "legal.html",
            "/search?q=x": "search.html",
            "https://x.test/blog/post": "blog/post.html",
        }
        for page, name in cases.items():
            with self.subTest(page=page):
                self.assertEqual(sm.route_filename(page), name)


class RelativeRefTest(unittest.TestCase):
    def test_known_pairs(self) -> None:
        self.assertEqual(sm.relative_ref("index.html", "static/app.js"), "static/app.js")
        self.assertEqual(sm.relative_ref("docs/guide.html", "static/app.js"), "../static/app.js")
        self.assertEqual(sm.relative_ref("static/css/a.css", "static/css/b.png"), "b.png")
        self.assertEqual(sm.relative_ref("a/b/c/d.js", "x.js"), "../../../x.js")
        self.assertEqual(sm.relative_ref("index.html", "img/my file.png"), "img/my%20file.png")

    def test_round_trip(self) -> None:
        files = [
            "index.html",
            "docs/guide.html",
            "static/js/app.js",
            "static/js/chunks/12.js",
            "a/b/c/d/e.css",
            "img-3f2a.png",
            "x/y z/%percent.json",
        ]
        for source in files:
            for target in files:
                with self.subTest(source=source, target=target):
                    rel = sm.relative_ref(source, target)
                    self.assertFalse(rel.startswith("/"))
                    resolved = posixpath.normpath(
                        posixpath.join(posixpath.dirname(source), unquote(rel))
                    )
                    self.assertEqual(resolved, target)


if __name__ == "__main__":
    unittest.main()
