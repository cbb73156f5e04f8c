import sys
import os
import json
import base64
import asyncio
import unittest
from unittest.mock import AsyncMock, Mock

import requests

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from console_analyzer.cache import ResolutionCache, ABSENT
from console_analyzer.models import StackFrame
from console_analyzer.source_resolver import (
    SourceResolver,
    HttpFetcher,
    FetchResponse,
    replace_extension,
    parse_map_text,
    decode_data_uri,
)
from console_analyzer.vlq import encode_vlq

JS_URL = "https://example.com/static/app.min.js"
MAP_URL = JS_URL + ".map"
SOURCE = "\n".join(f"line{i}" for i in range(1, 11))


def make_map(**overrides):
    data = {
        "version": 3,
        "file": "app.min.js",
        "sources": ["src/app.ts"],
        "names": ["loadUser"],
        "sourcesContent": [SOURCE],
        # col 0 -> 1:0, col 10 -> 5:2 (loadUser), col 20 -> 7:0
        "mappings": ",".join([
            encode_vlq([0, 0, 0, 0]),
            encode_vlq([10, 0, 4, 2, 0]),
            encode_vlq([10, 0, 2, -2]),
        ]),
    }
    data.update(overrides)
    return json.dumps(data)


class MockFetcher:
    """Serves canned HEAD results and GET bodies, recording every call."""

    def __init__(self, heads=None, bodies=None, error=None):
        self.heads = heads or {}
        self.bodies = bodies or {}  # url -> (text, content type)
        self.error = error
        self.calls = []

    async def head(self, url):
        self.calls.append(("HEAD", url))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.heads.get(url, False)

    async def get(self, url):
        self.calls.append(("GET", url))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        if url not in self.bodies:
            return None
        text, content_type = self.bodies[url]
        return FetchResponse(url=url, status=200, text=text, content_type=content_type)

    def count(self, method, url):
        return self.calls.count((method, url))


class GatedFetcher(MockFetcher):
    """MockFetcher whose requests wait until ``gate`` is set."""

    gate = None

    async def head(self, url):
        await self.gate.wait()
        return await super().head(url)


def resolve(resolver, frame):
    return asyncio.run(resolver.resolve_frame(frame))


class TestMapLocation(unittest.TestCase):
    def test_dot_map_convention(self):
        fetcher = MockFetcher(heads={MAP_URL: True},
                              bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher)

        resolved = resolve(resolver, StackFrame(JS_URL, 1, 15, "a"))

        orig = resolved.original
        self.assertIsNotNone(orig)
        self.assertEqual(orig.file_name, "src/app.ts")
        self.assertEqual((orig.line_number, orig.column_number), (5, 2))
        self.assertEqual(orig.name, "loadUser")
        # Three lines either side of line 5
        self.assertEqual(orig.source_snippet.split("\n"),
                         ["line2", "line3", "line4", "line5", "line6", "line7", "line8"])
        self.assertEqual(resolver.stats['frames_resolved'], 1)

    def test_extension_replacement(self):
        replaced = "https://example.com/static/app.min.map"
        fetcher = MockFetcher(heads={replaced: True},
                              bodies={replaced: (make_map(), "application/json; charset=utf-8")})
        resolver = SourceResolver(fetcher=fetcher)

        resolved = resolve(resolver, StackFrame(JS_URL, 1, 25))

        self.assertEqual(fetcher.calls[:2], [("HEAD", MAP_URL), ("HEAD", replaced)])
        self.assertEqual((resolved.original.line_number, resolved.original.column_number), (7, 0))
        self.assertIsNone(resolved.original.name)

    def test_directive_uses_last_reference(self):
        body = ("//# sourceMappingURL=old.js.map\n"
                "console.log(1);\n"
                "//# sourceMappingURL=maps/app.js.map\n")
        map_url = "https://example.com/static/maps/app.js.map"
        fetcher = MockFetcher(bodies={
            JS_URL: (body, "application/javascript"),
            map_url: (make_map(), "application/json"),
        })
        resolver = SourceResolver(fetcher=fetcher)

        resolved = resolve(resolver, StackFrame(JS_URL, 1, 15))

        self.assertEqual(resolved.original.file_name, "src/app.ts")
        self.assertEqual(fetcher.count("GET", map_url), 1)
        self.assertEqual(fetcher.count("GET", "https://example.com/static/old.js.map"), 0)

    def test_inline_data_uri(self):
        payload = base64.b64encode(make_map().encode("utf-8")).decode("ascii")
        body = f"x();\n//# sourceMappingURL=data:application/json;charset=utf-8;base64,{payload}"
        fetcher = MockFetcher(bodies={JS_URL: (body, "application/javascript")})
        resolver = SourceResolver(fetcher=fetcher)

        resolved = resolve(resolver, StackFrame(JS_URL, 1, 15))

        self.assertEqual(resolved.original.name, "loadUser")
        self.assertEqual([c for c in fetcher.calls if c[0] == "GET"], [("GET", JS_URL)])

    def test_relative_file_name_uses_base_url(self):
        fetcher = MockFetcher(heads={MAP_URL: True},
                              bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher,
                                  base_url="https://example.com/static/index.html")

        resolved = resolve(resolver, StackFrame("app.min.js", 1, 15))

        self.assertEqual(resolved.original.file_name, "src/app.ts")
        self.assertEqual(resolved.file_name, "app.min.js")

    def test_non_http_location_is_not_fetched(self):
        fetcher = MockFetcher()
        resolver = SourceResolver(fetcher=fetcher)

        frame = StackFrame("chrome-extension://abc/content.js", 1, 5)
        self.assertIs(resolve(resolver, frame), frame)
        self.assertEqual(fetcher.calls, [])
        self.assertIs(resolver.cache.get("chrome-extension://abc/content.js"), ABSENT)


class TestMapValidation(unittest.TestCase):
    def _resolver_serving(self, text, content_type):
        fetcher = MockFetcher(heads={MAP_URL: True}, bodies={MAP_URL: (text, content_type)})
        return SourceResolver(fetcher=fetcher), fetcher

    def test_non_json_content_type_is_negative_cached(self):
        resolver, fetcher = self._resolver_serving("<html>Not Found</html>", "text/html")
        frame = StackFrame(JS_URL, 1, 15)

        self.assertIsNone(resolve(resolver, frame).original)
        self.assertIs(resolver.cache.get(JS_URL), ABSENT)

        calls = len(fetcher.calls)
        self.assertIsNone(resolve(resolver, frame).original)
        self.assertEqual(len(fetcher.calls), calls)

    def test_body_that_is_not_an_object(self):
        resolver, _ = self._resolver_serving("not a source map", "")
        self.assertIsNone(resolve(resolver, StackFrame(JS_URL, 1, 15)).original)

    def test_xssi_prefix_is_stripped(self):
        resolver, _ = self._resolver_serving(")]}'\n" + make_map(), "application/json")
        self.assertIsNotNone(resolve(resolver, StackFrame(JS_URL, 1, 15)).original)

    def test_malformed_mappings_degrade(self):
        resolver, _ = self._resolver_serving(make_map(mappings="AA*A"), "application/json")
        frame = StackFrame(JS_URL, 1, 15)
        self.assertIs(resolve(resolver, frame), frame)

    def test_source_root_prefixes_sources(self):
        resolver, _ = self._resolver_serving(make_map(sourceRoot="webpack:///"), "application/json")
        resolved = resolve(resolver, StackFrame(JS_URL, 1, 15))
        self.assertEqual(resolved.original.file_name, "webpack:///src/app.ts")

    def test_missing_sources_content_has_no_snippet(self):
        resolver, _ = self._resolver_serving(make_map(sourcesContent=None), "application/json")
        resolved = resolve(resolver, StackFrame(JS_URL, 1, 15))
        self.assertIsNotNone(resolved.original)
        self.assertIsNone(resolved.original.source_snippet)


class TestResolverBehaviour(unittest.TestCase):
    def test_disabled_resolver_passes_frames_through(self):
        fetcher = MockFetcher()
        resolver = SourceResolver(fetcher=fetcher, enabled=False)
        frame = StackFrame(JS_URL, 1, 15)

        resolved = resolve(resolver, frame)

        self.assertIs(resolved, frame)
        self.assertIsNone(resolved.original)
        self.assertEqual(fetcher.calls, [])

        resolver.set_enabled(True)
        resolve(resolver, frame)
        self.assertTrue(fetcher.calls)

    def test_fetch_errors_never_raise(self):
        fetcher = MockFetcher(error=requests.ConnectionError("connection refused"))
        resolver = SourceResolver(fetcher=fetcher)
        frame = StackFrame(JS_URL, 1, 15)

        self.assertIs(resolve(resolver, frame), frame)
        self.assertEqual(resolver.stats['frames_unresolved'], 1)
        self.assertIs(resolver.cache.get(JS_URL), ABSENT)

    def test_unexpected_fetcher_errors_never_raise(self):
        fetcher = Mock()
        fetcher.head = AsyncMock(side_effect=RuntimeError("boom"))
        fetcher.get = AsyncMock(side_effect=RuntimeError("boom"))
        resolver = SourceResolver(fetcher=fetcher)
        frame = StackFrame(JS_URL, 1, 15)

        self.assertIs(resolve(resolver, frame), frame)

    def test_concurrent_frames_keep_order_and_share_one_load(self):
        fetcher = MockFetcher(heads={MAP_URL: True},
                              bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher)
        frames = [StackFrame(JS_URL, 1, col, f"f{col}") for col in (25, 15, 5)]

        resolved = asyncio.run(resolver.resolve_frames(frames))

        self.assertEqual([f.function_name for f in resolved], ["f25", "f15", "f5"])
        self.assertEqual([f.original.line_number for f in resolved], [7, 5, 1])
        self.assertEqual(fetcher.count("HEAD", MAP_URL), 1)
        self.assertEqual(fetcher.count("GET", MAP_URL), 1)
        self.assertEqual(resolver.stats['maps_loaded'], 1)

    def test_first_match_mode(self):
        fetcher = MockFetcher(heads={MAP_URL: True},
                              bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher, first_match=True)

        resolved = resolve(resolver, StackFrame(JS_URL, 1, 25))

        self.assertEqual((resolved.original.line_number, resolved.original.column_number), (1, 0))

    def test_eviction_releases_decoded_map(self):
        vendor_url = "https://example.com/static/vendor.js"
        fetcher = MockFetcher(
            heads={MAP_URL: True, vendor_url + ".map": True},
            bodies={
                MAP_URL: (make_map(), "application/json"),
                vendor_url + ".map": (make_map(sources=["src/vendor.ts"]), "application/json"),
            },
        )
        resolver = SourceResolver(fetcher=fetcher, cache=ResolutionCache(max_size=1))

        resolve(resolver, StackFrame(JS_URL, 1, 15))
        first_map = resolver.cache.get(JS_URL)
        resolve(resolver, StackFrame(vendor_url, 1, 15))

        self.assertTrue(first_map.released)
        self.assertEqual(resolver.cache.keys(), [vendor_url])

    def test_clear_cache_releases_maps(self):
        fetcher = MockFetcher(heads={MAP_URL: True},
                              bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher)
        resolve(resolver, StackFrame(JS_URL, 1, 15))
        source_map = resolver.cache.get(JS_URL)

        resolver.clear_cache()

        self.assertTrue(source_map.released)
        self.assertEqual(len(resolver.cache), 0)

    def _bundles(self, names):
        heads, bodies = {}, {}
        for name in names:
            map_url = f"https://example.com/static/{name}.js.map"
            heads[map_url] = True
            bodies[map_url] = (make_map(sources=[f"src/{name}.ts"]), "application/json")
        return heads, bodies

    def test_concurrent_loads_survive_eviction(self):
        heads, bodies = self._bundles(["a", "b", "c"])
        resolver = SourceResolver(fetcher=MockFetcher(heads=heads, bodies=bodies),
                                  cache=ResolutionCache(max_size=1))
        frames = [StackFrame(f"https://example.com/static/{name}.js", 1, 15) for name in "abc"]

        resolved = asyncio.run(resolver.resolve_frames(frames))

        self.assertEqual([f.original.file_name for f in resolved],
                         ["src/a.ts", "src/b.ts", "src/c.ts"])
        self.assertEqual(len(resolver.cache), 1)
        # Maps evicted mid-resolution are released once their frames finish
        self.assertEqual(resolver._in_use, {})
        self.assertEqual(resolver._deferred, {})

    def test_located_map_urls_follow_cache_bound(self):
        names = [f"chunk{i}" for i in range(20)]
        heads, bodies = self._bundles(names)
        resolver = SourceResolver(fetcher=MockFetcher(heads=heads, bodies=bodies),
                                  cache=ResolutionCache(max_size=2))

        for name in names:
            resolve(resolver, StackFrame(f"https://example.com/static/{name}.js", 1, 15))

        self.assertEqual(len(resolver.cache), 2)
        self.assertEqual(set(resolver._map_urls), set(resolver.cache.keys()))

    def test_cancelled_caller_does_not_cancel_shared_load(self):
        fetcher = GatedFetcher(heads={MAP_URL: True},
                               bodies={MAP_URL: (make_map(), "application/json")})
        resolver = SourceResolver(fetcher=fetcher)

        async def scenario():
            fetcher.gate = asyncio.Event()
            first = asyncio.ensure_future(resolver.resolve_frame(StackFrame(JS_URL, 1, 15, "first")))
            second = asyncio.ensure_future(resolver.resolve_frame(StackFrame(JS_URL, 1, 25, "second")))
            for _ in range(3):
                await asyncio.sleep(0)
            first.cancel()
            fetcher.gate.set()
            resolved = await second
            await asyncio.gather(first, return_exceptions=True)
            return first, resolved

        first, resolved = asyncio.run(scenario())

        self.assertTrue(first.cancelled())
        self.assertEqual(resolved.original.line_number, 7)
        self.assertEqual(fetcher.count("GET", MAP_URL), 1)
        self.assertEqual(resolver._in_use, {})


class TestHttpFetcher(unittest.TestCase):
    def _session(self, ok=True, status=200, text="{}", content_type="application/json"):
        session = Mock()
        response = Mock(ok=ok, status_code=status, text=text, url=MAP_URL,
                        headers={'Content-Type': content_type})
        session.get.return_value = response
        session.head.return_value = response
        return session

    def test_get_returns_body_and_content_type(self):
        fetcher = HttpFetcher(timeout=3, session=self._session(text='{"version": 3}'))

        response = asyncio.run(fetcher.get(MAP_URL))

        self.assertEqual(response.text, '{"version": 3}')
        self.assertEqual(response.content_type, "application/json")
        fetcher._session.get.assert_called_once_with(MAP_URL, timeout=3)

    def test_get_failure_status_returns_none(self):
        fetcher = HttpFetcher(session=self._session(ok=False, status=404))
        self.assertIsNone(asyncio.run(fetcher.get(MAP_URL)))
        self.assertFalse(asyncio.run(fetcher.head(MAP_URL)))

    def test_default_session_has_retries(self):
        fetcher = HttpFetcher()
        session = fetcher._get_session()
        adapter = session.get_adapter("https://example.com/")
        self.assertEqual(adapter.max_retries.total, 2)
        self.assertIn('ConsoleAnalyzer', session.headers['User-Agent'])
        fetcher.close()
        self.assertIsNone(fetcher._session)


class TestHelpers(unittest.TestCase):
    def test_replace_extension(self):
        self.assertEqual(replace_extension("https://x.test/a/app.min.js?v=2"),
                         "https://x.test/a/app.min.map?v=2")
        self.assertIsNone(replace_extension("https://x.test/bundle"))

    def test_parse_map_text(self):
        self.assertEqual(parse_map_text('\ufeff{"version": 3}'), {"version": 3})
        self.assertIsNone(parse_map_text("<!doctype html>"))

    def test_decode_data_uri(self):
        payload = base64.b64encode(b'{"version": 3}').decode("ascii")
        self.assertEqual(decode_data_uri(f"data:application/json;base64,{payload}"), {"version": 3})
        self.assertIsNone(decode_data_uri("data:text/plain;base64,AAAA"))


if __name__ == '__main__':
    unittest.main()
