"""Wikipedia page adapter: action API metadata plus mobile-html content."""

import re
from typing import Any
from urllib.parse import quote

import structlog
from bs4 import BeautifulSoup

from taxaharvest.fetch.client import RetryClient
from taxaharvest.fetch.models import ApiRequest, ApiResponse
from taxaharvest.ingest.errors import DecodeError
from taxaharvest.ingest.models import DecodedEntity, MissingEntity
from taxaharvest.ingest.orchestrator import ImportSession
from taxaharvest.providers.common import load_json_object, optional_int
from taxaharvest.store.models import LookupRow


logger = structlog.get_logger()

PAGE_ENDPOINT = "wikipedia.page"

CATEGORY_PREFIX = "Category:"
DISAMBIGUATION_CATEGORY = "disambiguation pages"
SET_INDEX_CATEGORY = "set index articles"

TAXOBOX_TEMPLATES: tuple[str, ...] = (
    "{{taxobox",
    "{{speciesbox",
    "{{automatic taxobox",
    "{{insectbox",
    "{{subspeciesbox",
)

_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Normalize a page title the way MediaWiki compares titles.

    Drops any section fragment, turns underscores into spaces, collapses
    whitespace, and upper-cases the first letter.

    Args:
        title: Raw title.

    Returns:
        Normalized title, possibly empty.
    """
    text = title.strip()
    if "#" in text:
        text = text.split("#", 1)[0]
    text = _WHITESPACE.sub(" ", text.replace("_", " ")).strip()
    if not text:
        return ""
    return text[0].upper() + text[1:]


def to_slug(title: str) -> str:
    """Convert a title to its URL path segment (e.g. "Panthera_leo")."""
    return quote(normalize_title(title).replace(" ", "_"), safe="")


def has_taxobox_template(wikitext: str) -> bool:
    """Check wikitext for a taxobox-family template."""
    lowered = wikitext.lower()
    return any(template in lowered for template in TAXOBOX_TEMPLATES)


def has_biota_infobox(html: str) -> bool:
    """Check rendered HTML for an `infobox biota` table."""
    soup = BeautifulSoup(html, "html.parser")
    return soup.select_one("table.infobox.biota") is not None


def resolve_title_chain(
    requested: str,
    normalized: list[dict[str, Any]],
    redirects: list[dict[str, Any]],
) -> tuple[list[str], bool]:
    """Follow normalization and redirect mappings from a requested title.

    Args:
        requested: Title as requested.
        normalized: `query.normalized` entries (`from`/`to`).
        redirects: `query.redirects` entries (`from`/`to`).

    Returns:
        Titles visited after the requested one, and whether any step was a
        redirect rather than a normalization.

    Raises:
        DecodeError: If the mappings form a cycle.
    """
    normalized_map = {
        entry["from"]: entry["to"]
        for entry in normalized
        if isinstance(entry.get("from"), str) and isinstance(entry.get("to"), str)
    }
    redirect_map = {
        entry["from"]: entry["to"]
        for entry in redirects
        if isinstance(entry.get("from"), str) and isinstance(entry.get("to"), str)
    }

    chain: list[str] = []
    visited = {requested}
    current = requested
    redirected = False
    while True:
        if current in normalized_map:
            current = normalized_map[current]
        elif current in redirect_map:
            current = redirect_map[current]
            redirected = True
        else:
            break
        if current in visited:
            raise DecodeError(requested, f"redirect cycle at '{current}'")
        visited.add(current)
        chain.append(current)
    return chain, redirected


class WikipediaPageAdapter:
    """Fetches a page in two steps: metadata, then rendered content.

    The action API query resolves normalization and redirects and reports
    page properties, categories and the latest wikitext. The REST
    mobile-html rendering of the canonical title is the stored payload.
    """

    def __init__(
        self,
        action_endpoint: str,
        rest_endpoint: str,
        rest_client: RetryClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            action_endpoint: Action API URL.
            rest_endpoint: REST base URL ending in "/".
            rest_client: Client paced for the REST endpoint; the session
                default is used when None.
        """
        self._action_endpoint = action_endpoint
        self._rest_endpoint = (
            rest_endpoint if rest_endpoint.endswith("/") else rest_endpoint + "/"
        )
        self._rest_client = rest_client

    @property
    def endpoint(self) -> str:
        """Endpoint key for the failure ledger."""
        return PAGE_ENDPOINT

    def build_query_request(self, title: str) -> ApiRequest:
        """Build the action API metadata query for a title."""
        return ApiRequest(
            method="POST",
            url=self._action_endpoint,
            form={
                "action": "query",
                "format": "json",
                "formatversion": "2",
                "redirects": "1",
                "prop": "info|pageprops|categories|revisions",
                "inprop": "displaytitle",
                "ppprop": "disambiguation|setindex",
                "cllimit": "max",
                "rvslots": "main",
                "rvprop": "ids|timestamp|content",
                "rvlimit": "1",
                "titles": title,
            },
            headers={"Accept": "application/json"},
        )

    def build_content_request(self, title: str) -> ApiRequest:
        """Build the REST mobile-html request for a canonical title."""
        return ApiRequest(
            url=f"{self._rest_endpoint}page/mobile-html/{to_slug(title)}",
            headers={"Accept": "text/html"},
        )

    def fetch(
        self, session: ImportSession, external_id: str
    ) -> DecodedEntity | MissingEntity:
        """Fetch metadata and content for one title."""
        requested = external_id.strip()
        if not normalize_title(requested):
            raise DecodeError(external_id, "empty page title")

        query_response = session.send(self.build_query_request(requested))
        page = self.decode_query(requested, query_response)
        if isinstance(page, MissingEntity):
            return page

        content_response = session.send(
            self.build_content_request(page.canonical_title or page.external_id),
            client=self._rest_client,
        )
        return self.attach_content(page, content_response)

    def decode_query(
        self, requested: str, response: ApiResponse
    ) -> DecodedEntity | MissingEntity:
        """Decode the action API query into page metadata.

        The returned entity has an empty payload until `attach_content`
        fills it.

        Args:
            requested: Title as requested.
            response: Query response.

        Returns:
            Page metadata, or a missing marker.

        Raises:
            DecodeError: If the response has no page or the title chain
                loops.
        """
        data = load_json_object(requested, response)
        if "error" in data:
            error = data["error"]
            info = error.get("info") if isinstance(error, dict) else error
            raise DecodeError(requested, f"API error: {info}")

        query = data.get("query")
        if not isinstance(query, dict):
            raise DecodeError(requested, "response has no query")
        pages = query.get("pages")
        if not isinstance(pages, list) or not pages or not isinstance(pages[0], dict):
            raise DecodeError(requested, "response has no pages")
        page = pages[0]

        if "missing" in page or "invalid" in page:
            reason = page.get("missingreason") or page.get("invalidreason")
            if not isinstance(reason, str) or not reason:
                reason = "missing" if "missing" in page else "invalid"
            return MissingEntity(requested_id=requested, reason=reason)

        canonical = page.get("title")
        if not isinstance(canonical, str) or not canonical.strip():
            raise DecodeError(requested, "page has no title")

        chain, redirected = resolve_title_chain(
            requested,
            _mapping_list(query.get("normalized")),
            _mapping_list(query.get("redirects")),
        )
        if chain and chain[-1] != canonical:
            raise DecodeError(
                requested, f"title chain ends at '{chain[-1]}', page is '{canonical}'"
            )

        categories = _category_names(page.get("categories"))
        lowered = {category.lower() for category in categories}
        pageprops = page.get("pageprops")
        pageprops = pageprops if isinstance(pageprops, dict) else {}
        revision = _first_revision(page.get("revisions"))
        wikitext = _main_slot_content(revision)

        # Normalization alone is not a redirect; keep it as a lookup only
        lookups: list[LookupRow] = []
        if requested != canonical and not redirected:
            lookups.append(LookupRow(lookup_id=requested, scope="normalized"))

        return DecodedEntity(
            external_id=canonical,
            requested_id=requested,
            payload="",
            canonical_title=canonical,
            attributes={
                "page_id": optional_int(page.get("pageid")),
                "revision_id": optional_int(revision.get("revid")),
                "revision_timestamp": revision.get("timestamp"),
                "categories": categories,
                "is_disambiguation": "disambiguation" in pageprops
                or DISAMBIGUATION_CATEGORY in lowered,
                "is_set_index": "setindex" in pageprops
                or SET_INDEX_CATEGORY in lowered,
                "has_taxobox": has_taxobox_template(wikitext),
            },
            lookups=lookups,
            redirect_hops=chain if redirected else [],
            raw_record=page,
        )

    def attach_content(
        self, page: DecodedEntity, response: ApiResponse
    ) -> DecodedEntity:
        """Set the rendered HTML as payload and refine `has_taxobox`."""
        html = response.text
        attributes = dict(page.attributes)
        attributes["has_taxobox"] = bool(
            attributes.get("has_taxobox") or has_biota_infobox(html)
        )
        return page.model_copy(update={"payload": html, "attributes": attributes})


def _mapping_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _category_names(value: Any) -> list[str]:
    names: list[str] = []
    for entry in _mapping_list(value):
        title = entry.get("title")
        if not isinstance(title, str):
            continue
        names.append(title.removeprefix(CATEGORY_PREFIX))
    return names


def _first_revision(value: Any) -> dict[str, Any]:
    revisions = _mapping_list(value)
    return revisions[0] if revisions else {}


def _main_slot_content(revision: dict[str, Any]) -> str:
    slots = revision.get("slots")
    main = slots.get("main") if isinstance(slots, dict) else None
    content = main.get("content") if isinstance(main, dict) else None
    return content if isinstance(content, str) else ""
