from __future__ import annotations

import html
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from agentrelay.config import settings
from agentrelay.errors import CapabilityProviderError, CapabilityValidationError

from .base import Capability, CapabilityContext, RESULT_FORMAT_TEXT

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)
MIN_QUERY_CHARS = 2
MAX_QUERY_CHARS = 500
MAX_SOURCES = 5
MAX_SUMMARY_CHARS = 2000
MAX_TITLE_CHARS = 200
MAX_SNIPPET_CHARS = 300
MAX_CONCURRENT_SEARCHES = 2

# At most two provider calls in flight across all capability instances.
_SEARCH_SLOTS = threading.BoundedSemaphore(MAX_CONCURRENT_SEARCHES)


@dataclass(frozen=True)
class SearchHit:
    title: str
    url: str
    snippet: str


@dataclass(frozen=True)
class WebSearchRequest:
    query: str
    max_results: int
    language: str

    @classmethod
    def from_args(
        cls, args: dict[str, Any], default_language: str, max_results_cap: int
    ) -> "WebSearchRequest":
        query = re.sub(r"\s+", " ", str(args.get("query") or "")).strip()
        if not query:
            raise CapabilityValidationError("web_search: query must not be empty.")
        if len(query) < MIN_QUERY_CHARS:
            raise CapabilityValidationError(
                f"web_search: query must be at least {MIN_QUERY_CHARS} characters long."
            )
        if len(query) > MAX_QUERY_CHARS:
            raise CapabilityValidationError(
                f"web_search: query must be less than {MAX_QUERY_CHARS} characters."
            )
        raw_limit = args.get("max_results", max_results_cap)
        if not isinstance(raw_limit, int) or isinstance(raw_limit, bool) or raw_limit < 1:
            raise CapabilityValidationError("web_search: max_results must be a positive integer.")
        language = str(args.get("language") or default_language or "en").strip().lower()
        if language not in {"en", "tr"}:
            language = "en"
        return cls(query=query, max_results=min(raw_limit, max_results_cap), language=language)


class WebSearchProvider(ABC):
    name = "unknown"

    @abstractmethod
    def search(
        self, query: str, max_results: int, language: str, timeout_seconds: int
    ) -> list[SearchHit]:
        raise NotImplementedError


class GoogleCustomSearchProvider(WebSearchProvider):
    name = "google"
    SEARCH_URL = "https://www.googleapis.com/customsearch/v1"

    def __init__(self, api_key: str, engine_id: str) -> None:
        self.api_key = api_key
        self.engine_id = engine_id

    def search(
        self, query: str, max_results: int, language: str, timeout_seconds: int
    ) -> list[SearchHit]:
        params = {
            "key": self.api_key,
            "cx": self.engine_id,
            "q": query,
            "num": str(min(max_results, 10)),
            "lr": "lang_tr" if language == "tr" else "lang_en",
            "safe": "active",
            "fields": "items(title,link,snippet,displayLink)",
        }
        payload = _get_json(
            f"{self.SEARCH_URL}?{urlparse.urlencode(params)}",
            headers={"Accept": "application/json"},
            timeout_seconds=timeout_seconds,
            provider_label="Google search",
        )
        rows = payload.get("items") or []
        hits: list[SearchHit] = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict):
                continue
            title = _clean_html(str(row.get("title") or "").strip())
            url = _normalize_http_url(str(row.get("link") or "").strip())
            if not title or not url:
                continue
            snippet = _clean_html(str(row.get("snippet") or "").strip())
            hits.append(SearchHit(title=title, url=url, snippet=snippet))
        return hits[:max_results]


class DuckDuckGoProvider(WebSearchProvider):
    name = "duckduckgo"
    SEARCH_URL = "https://api.duckduckgo.com/"

    def search(
        self, query: str, max_results: int, language: str, timeout_seconds: int
    ) -> list[SearchHit]:
        params = {
            "q": query,
            "format": "json",
            "no_html": "1",
            "no_redirect": "1",
            "kl": "tr-tr" if language == "tr" else "us-en",
        }
        payload = _get_json(
            f"{self.SEARCH_URL}?{urlparse.urlencode(params)}",
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept-Language": "en-US,en;q=0.8"},
            timeout_seconds=timeout_seconds,
            provider_label="DuckDuckGo search",
        )
        hits: list[SearchHit] = []
        abstract_text = _clean_html(str(payload.get("AbstractText") or "").strip())
        abstract_url = _normalize_http_url(str(payload.get("AbstractURL") or "").strip())
        heading = _clean_html(str(payload.get("Heading") or query).strip())
        if abstract_text and abstract_url:
            hits.append(SearchHit(title=heading or query, url=abstract_url, snippet=abstract_text))

        for topic in _iter_duck_related_topics(payload.get("RelatedTopics") or []):
            if len(hits) >= max_results:
                break
            text = _clean_html(str(topic.get("Text") or "").strip())
            first_url = _normalize_http_url(str(topic.get("FirstURL") or "").strip())
            if not text or not first_url:
                continue
            title = text.split(" - ", 1)[0].strip() or "Related"
            hits.append(SearchHit(title=title, url=first_url, snippet=text))
        return hits[:max_results]


class WebSearchCapability(Capability):
    name = "web_search"
    result_format = RESULT_FORMAT_TEXT
    unavailable_message = "Web search is unavailable right now."

    def __init__(
        self,
        providers: list[WebSearchProvider] | None = None,
        max_results: int | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self._providers = providers if providers is not None else build_provider_chain(
            google_api_key=settings.google_search_api_key,
            google_engine_id=settings.google_search_engine_id,
        )
        self._max_results = max(1, max_results or settings.web_search_max_results)
        self._timeout_seconds = max(1, timeout_seconds or settings.web_search_timeout_seconds)

    def run(self, args: dict[str, Any], context: CapabilityContext) -> str:
        request = WebSearchRequest.from_args(args, context.language, self._max_results)
        errors: list[str] = []
        answered = False
        for provider in self._providers:
            try:
                with _SEARCH_SLOTS:
                    hits = provider.search(
                        query=request.query,
                        max_results=request.max_results,
                        language=request.language,
                        timeout_seconds=self._timeout_seconds,
                    )
            except RuntimeError as exc:
                logger.info("Search provider %s failed: %s", provider.name, exc)
                errors.append(f"{provider.name}: {exc}")
                continue
            answered = True
            if hits:
                return render_narrative(request.query, hits, request.language)

        if not answered:
            raise CapabilityProviderError(
                "; ".join(errors) or "No search providers configured.",
                user_message=_unavailable_text(request.query, request.language),
            )
        return render_narrative(request.query, [], request.language)


def build_provider_chain(
    google_api_key: str | None, google_engine_id: str | None
) -> list[WebSearchProvider]:
    chain: list[WebSearchProvider] = []
    if google_api_key and google_engine_id:
        chain.append(GoogleCustomSearchProvider(google_api_key, google_engine_id))
    chain.append(DuckDuckGoProvider())
    return chain


def render_narrative(query: str, hits: list[SearchHit], language: str) -> str:
    """Turn search hits into reading material for the reasoning engine."""
    sources = [
        SearchHit(
            title=hit.title[:MAX_TITLE_CHARS],
            url=hit.url,
            snippet=hit.snippet[:MAX_SNIPPET_CHARS],
        )
        for hit in hits
        if hit.url and hit.title
    ][:MAX_SOURCES]
    if not sources:
        if language == "tr":
            return f'"{query}" hakkında sonuç bulunamadı.'
        return f'No results found for "{query}".'

    top_snippets = " ".join([hit.snippet for hit in sources if hit.snippet][:3]).rstrip(".")
    if language == "tr":
        summary = (
            f'"{query}" hakkında güncel bilgiler: {top_snippets}. '
            "Detaylı bilgi için aşağıdaki kaynakları inceleyebilirsiniz."
        )
        header = "Kaynaklar:"
    else:
        summary = (
            f'Current information about "{query}": {top_snippets}. '
            "You can review the sources below for detailed information."
        )
        header = "Sources:"
    lines = [summary[:MAX_SUMMARY_CHARS], "", header]
    for index, hit in enumerate(sources, start=1):
        lines.append(f"{index}. {hit.title} - {hit.url}")
    return "\n".join(lines)


def _unavailable_text(query: str, language: str) -> str:
    if language == "tr":
        return (
            f'"{query}" hakkında arama yapıldı ancak şu anda web sonuçları alınamadı. '
            "Bilgilerimi kullanarak size yardımcı olmaya devam edebilirim."
        )
    return (
        f'Search was performed for "{query}" but web results could not be retrieved '
        "at the moment. I can continue to help you using my existing knowledge."
    )


def _get_json(
    url: str, headers: dict[str, str], timeout_seconds: int, provider_label: str
) -> dict[str, Any]:
    req = urlrequest.Request(url, headers=headers, method="GET")
    try:
        with urlrequest.urlopen(req, timeout=timeout_seconds) as res:
            payload = json.loads(res.read().decode("utf-8"))
    except urlerror.HTTPError as exc:
        raise RuntimeError(f"{provider_label} failed ({exc.code})") from exc
    except (urlerror.URLError, TimeoutError, ConnectionError, ValueError) as exc:
        raise RuntimeError(f"{provider_label} failed: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"{provider_label} returned an unexpected payload.")
    return payload


def _iter_duck_related_topics(related: object) -> list[dict]:
    out: list[dict] = []
    if not isinstance(related, list):
        return out
    for row in related:
        if not isinstance(row, dict):
            continue
        nested = row.get("Topics")
        if isinstance(nested, list):
            out.extend(topic for topic in nested if isinstance(topic, dict))
            continue
        out.append(row)
    return out


def _clean_html(raw: str) -> str:
    text = re.sub(r"<[^>]+>", " ", raw or "")
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _normalize_http_url(raw_url: str) -> str:
    value = (raw_url or "").strip()
    if not value:
        return ""
    if value.startswith("//"):
        value = "https:" + value
    parsed = urlparse.urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return ""
    return value
