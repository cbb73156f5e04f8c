"""Source map resolution for captured stack frames.

Maps bundled/minified stack locations back to original source positions. Source
maps are located by convention (``<url>.map``), by extension replacement, or by
the ``//# sourceMappingURL=`` directive at the end of the generated file, which
may also carry the map inline as a base64 data URI.

Resolution is best effort: any fetch, parse or decode failure leaves the frame
unresolved and is only logged.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import posixpath
import re
from dataclasses import dataclass, replace
from typing import List, Dict, Any, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache import ResolutionCache, ABSENT, MISS, MAX_CACHE_SIZE, release_entry
from .config import CODE_CONTEXT_LINES, DEFAULT_HTTP_TIMEOUT
from .errors import MappingDecodeError
from .models import StackFrame, OriginalLocation
from .vlq import SourceMap

logger = logging.getLogger("console_analyzer.source_resolver")

SOURCE_MAPPING_URL = re.compile(r'//[#@]\s*sourceMappingURL\s*=\s*(\S+)')
DATA_URI_JSON = re.compile(r'^data:application/json(?:;charset=[^;,]+)?;base64,(.+)$', re.IGNORECASE)
XSSI_PREFIX = ")]}'"
FETCHABLE_SCHEMES = ("http", "https")


@dataclass
class FetchResponse:
    """Body and metadata of a successful GET."""
    url: str
    status: int
    text: str
    content_type: str = ""


class HttpFetcher:
    """Blocking ``requests`` client exposed through awaitable methods.

    Calls run in the event loop's default executor so the loop is never blocked.
    """

    USER_AGENT = 'ConsoleAnalyzer/1.0 (Source Map Fetch)'

    def __init__(self, timeout: int = DEFAULT_HTTP_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session

    def _get_session(self) -> requests.Session:
        """Get or create HTTP session with retry configuration."""
        if self._session is None:
            self._session = requests.Session()
            retry_strategy = Retry(
                total=2,
                backoff_factor=0.3,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["HEAD", "GET"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)
            self._session.headers.update({'User-Agent': self.USER_AGENT})
        return self._session

    def head_sync(self, url: str) -> bool:
        response = self._get_session().head(url, timeout=self.timeout, allow_redirects=True)
        return response.ok

    def get_sync(self, url: str) -> Optional[FetchResponse]:
        response = self._get_session().get(url, timeout=self.timeout)
        if not response.ok:
            return None
        return FetchResponse(
            url=response.url or url,
            status=response.status_code,
            text=response.text,
            content_type=response.headers.get('Content-Type', ''),
        )

    async def head(self, url: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.head_sync, url)

    async def get(self, url: str) -> Optional[FetchResponse]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get_sync, url)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


def replace_extension(url: str, new_ext: str = ".map") -> Optional[str]:
    """Replace the file extension in a URL's path, keeping query and fragment."""
    parts = urlsplit(url)
    root, ext = posixpath.splitext(parts.path)
    if not ext:
        return None
    return urlunsplit((parts.scheme, parts.netloc, root + new_ext, parts.query, parts.fragment))


def decode_data_uri(ref: str) -> Optional[Dict[str, Any]]:
    """Decode an inline ``data:application/json;base64,`` source map."""
    match = DATA_URI_JSON.match(ref)
    if not match:
        return None
    payload = base64.b64decode(match.group(1), validate=False)
    return json.loads(payload.decode('utf-8'))


def parse_map_text(text: str) -> Optional[Dict[str, Any]]:
    """Parse a fetched body as a JSON source map, or None if it is not JSON."""
    body = text.lstrip('\ufeff')
    if body.startswith(XSSI_PREFIX):
        body = body.split('\n', 1)[1] if '\n' in body else ''
    body = body.lstrip()
    if not body.startswith('{'):
        return None
    return json.loads(body)


class SourceResolver:
    """Resolves stack frames to original source locations.

    Decoded maps, and the absence of a map, are kept in a bounded LRU cache
    keyed by the generated file URL.
    """

    def __init__(self, fetcher: Optional[HttpFetcher] = None,
                 cache: Optional[ResolutionCache] = None,
                 enabled: bool = True,
                 context_lines: int = CODE_CONTEXT_LINES,
                 first_match: bool = False,
                 base_url: Optional[str] = None):
        """
        Initialize the resolver.

        Args:
            fetcher: HTTP client; defaults to an HttpFetcher.
            cache: Map cache; defaults to a ResolutionCache of MAX_CACHE_SIZE.
            enabled: When False, frames pass through untouched.
            context_lines: Original source lines kept before/after a resolved line.
            first_match: Use the first qualifying segment on a line instead of
                the closest one.
            base_url: Page location used to absolutize relative file names.
        """
        self.fetcher = fetcher if fetcher is not None else HttpFetcher()
        self.cache = cache if cache is not None else ResolutionCache(MAX_CACHE_SIZE)
        self.enabled = enabled
        self.context_lines = context_lines
        self.first_match = first_match
        self.base_url = base_url

        self._map_urls: Dict[str, str] = {}  # generated file URL -> located map URL
        self._inflight: Dict[str, "asyncio.Future[Optional[SourceMap]]"] = {}
        # Frames currently resolving against a file URL, and maps evicted
        # while those frames still hold them
        self._in_use: Dict[str, int] = {}
        self._deferred: Dict[str, List[Any]] = {}
        self.cache.on_evict = self._on_evict

        # Statistics
        self.stats = {
            'maps_loaded': 0,
            'maps_absent': 0,
            'frames_resolved': 0,
            'frames_unresolved': 0,
        }

    def set_enabled(self, enabled: bool) -> None:
        """Toggle source map resolution."""
        self.enabled = enabled

    def _absolute(self, file_name: str) -> str:
        if self.base_url:
            return urljoin(self.base_url, file_name)
        return file_name

    async def resolve_frame(self, frame: StackFrame) -> StackFrame:
        """Resolve one frame.

        Returns a copy carrying ``original`` when the location maps to a source,
        otherwise the input frame. Never raises.
        """
        if not self.enabled:
            return frame

        file_url = self._absolute(frame.file_name)
        self._pin(file_url)
        try:
            source_map = await self.get_source_map(file_url)
            if source_map is None:
                self.stats['frames_unresolved'] += 1
                return frame

            position = source_map.original_position_for(
                frame.line_number, frame.column_number, first_match=self.first_match)
            if position is None:
                self.stats['frames_unresolved'] += 1
                return frame

            source, line, column, name = position
            original = OriginalLocation(
                file_name=self._display_source(source_map, source),
                line_number=line,
                column_number=column,
                source_snippet=self._snippet(source_map, source, line),
                name=name,
            )
            self.stats['frames_resolved'] += 1
            return replace(frame, original=original)
        except Exception as e:
            logger.warning("Failed to resolve source map for %s: %s", frame.file_name, e)
            self.stats['frames_unresolved'] += 1
            return frame
        finally:
            self._unpin(file_url)

    def _pin(self, file_url: str) -> None:
        self._in_use[file_url] = self._in_use.get(file_url, 0) + 1

    def _unpin(self, file_url: str) -> None:
        count = self._in_use.get(file_url, 0) - 1
        if count > 0:
            self._in_use[file_url] = count
            return
        self._in_use.pop(file_url, None)
        for value in self._deferred.pop(file_url, []):
            release_entry(value)

    def _on_evict(self, file_url: str, value: Any) -> None:
        """Cache eviction hook: forget the map URL, release when no frame holds the map."""
        self._map_urls.pop(file_url, None)
        if self._in_use.get(file_url):
            self._deferred.setdefault(file_url, []).append(value)
        else:
            release_entry(value)

    async def resolve_frames(self, frames: List[StackFrame]) -> List[StackFrame]:
        """Resolve frames concurrently, preserving their order."""
        if not frames:
            return []
        return list(await asyncio.gather(*(self.resolve_frame(f) for f in frames)))

    async def get_source_map(self, file_url: str) -> Optional[SourceMap]:
        """Return the decoded map for a generated file, or None if it has none.

        Concurrent callers for the same uncached file share a single load.
        """
        cached = self.cache.get(file_url)
        if cached is not MISS:
            return None if cached is ABSENT else cached

        pending = self._inflight.get(file_url)
        if pending is None:
            pending = asyncio.ensure_future(self._load_and_cache(file_url))
            self._inflight[file_url] = pending
            pending.add_done_callback(lambda _f, key=file_url: self._inflight.pop(key, None))
        # One cancelled caller must not cancel the load shared by the others
        return await asyncio.shield(pending)

    async def _load_and_cache(self, file_url: str) -> Optional[SourceMap]:
        source_map: Optional[SourceMap] = None
        try:
            if urlsplit(file_url).scheme in FETCHABLE_SCHEMES:
                map_url = await self.find_source_map_url(file_url)
                if map_url:
                    source_map = await self.load_source_map(map_url)
            else:
                logger.debug("Not fetching source map for non-http location: %s", file_url)
        except Exception as e:
            logger.warning("Failed to load source map for %s: %s", file_url, e)
            source_map = None

        if source_map is None:
            self.stats['maps_absent'] += 1
            self.cache.put(file_url, ABSENT)
        else:
            self.stats['maps_loaded'] += 1
            self.cache.put(file_url, source_map)
        return source_map

    async def find_source_map_url(self, file_url: str) -> Optional[str]:
        """Locate the source map reference for a generated file.

        Tries ``<url>.map``, then ``<url>`` with its extension replaced by
        ``.map``, then the ``sourceMappingURL`` directive in the file body. The
        result may be a ``data:`` URI.
        """
        if file_url in self._map_urls:
            return self._map_urls[file_url]

        candidates = [file_url + ".map"]
        replaced = replace_extension(file_url)
        if replaced and replaced not in candidates and replaced != file_url:
            candidates.append(replaced)

        for url in candidates:
            try:
                if await self.fetcher.head(url):
                    self._map_urls[file_url] = url
                    return url
            except (requests.RequestException, OSError) as e:
                logger.debug("HEAD %s failed: %s", url, e)

        # Fall back to the directive in the generated file
        try:
            response = await self.fetcher.get(file_url)
        except (requests.RequestException, OSError) as e:
            logger.debug("GET %s failed: %s", file_url, e)
            return None
        if response is None:
            return None

        matches = SOURCE_MAPPING_URL.findall(response.text)
        if not matches:
            return None

        ref = matches[-1]
        map_url = ref if ref.startswith("data:") else urljoin(file_url, ref)
        self._map_urls[file_url] = map_url
        return map_url

    async def load_source_map(self, url: str) -> Optional[SourceMap]:
        """Load and decode a source map from a URL or inline data URI."""
        try:
            if url.startswith("data:"):
                raw = decode_data_uri(url)
                if raw is None:
                    logger.debug("Unsupported data URI source map reference")
                    return None
                return SourceMap.from_json(raw)

            response = await self.fetcher.get(url)
            if response is None:
                return None

            content_type = (response.content_type or "").lower()
            if content_type and "json" not in content_type:
                logger.debug("Skipping %s: content type %s is not JSON", url, content_type)
                return None

            raw = parse_map_text(response.text)
            if raw is None:
                logger.debug("Skipping %s: body is not a JSON object", url)
                return None
            return SourceMap.from_json(raw)
        except (requests.RequestException, OSError, ValueError, MappingDecodeError) as e:
            logger.warning("Failed to fetch source map %s: %s", url[:200], e)
            return None

    def _display_source(self, source_map: SourceMap, source: str) -> str:
        root = source_map.source_root
        if not root or urlsplit(source).scheme:
            return source
        # Plain concatenation; urljoin drops roots like webpack:///
        if not root.endswith("/"):
            root += "/"
        return root + source.lstrip("/")

    def _snippet(self, source_map: SourceMap, source: str, line: int) -> Optional[str]:
        """Lines of original source around a 1-based line, if embedded in the map."""
        try:
            content = source_map.source_content_for(source)
            if not content:
                return None
            lines = content.split("\n")
            index = line - 1
            start = max(0, index - self.context_lines)
            end = min(len(lines), index + self.context_lines + 1)
            if start >= end:
                return None
            return "\n".join(lines[start:end])
        except (TypeError, ValueError, IndexError):
            return None

    def clear_cache(self) -> None:
        """Release every cached map and forget located map URLs."""
        self.cache.clear()
        self._map_urls.clear()

    def close(self) -> None:
        self.clear_cache()
        close = getattr(self.fetcher, "close", None)
        if callable(close):
            close()
