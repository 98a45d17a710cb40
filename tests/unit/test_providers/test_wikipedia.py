"""Unit tests for Wikipedia title handling and page decoding."""

import json
from typing import Any

import pytest

from taxaharvest.fetch.models import ApiResponse
from taxaharvest.ingest.errors import DecodeError
from taxaharvest.ingest.models import DecodedEntity, MissingEntity
from taxaharvest.providers.wikipedia import (
    WikipediaPageAdapter,
    has_biota_infobox,
    has_taxobox_template,
    normalize_title,
    resolve_title_chain,
    to_slug,
)
from taxaharvest.store.models import LookupRow


ACTION = "https://en.wikipedia.org/w/api.php"
REST = "https://en.wikipedia.org/api/rest_v1"

LION_WIKITEXT = "{{Short description|Large cat}}\n{{Speciesbox\n| genus = Panthera}}"
BIOTA_HTML = '<table class="infobox biota"><tr><td>Lion</td></tr></table>'


def json_response(data: Any) -> ApiResponse:
    """Wrap a JSON document in a 200 response."""
    return ApiResponse(url=ACTION, status_code=200, body=json.dumps(data).encode())


def lion_page(**overrides: Any) -> dict[str, Any]:
    """Build a query page for "Lion"."""
    page: dict[str, Any] = {
        "pageid": 36896,
        "ns": 0,
        "title": "Lion",
        "categories": [
            {"ns": 14, "title": "Category:Panthera"},
            {"ns": 14, "title": "Category:Apex predators"},
        ],
        "revisions": [
            {
                "revid": 1234567,
                "timestamp": "2024-05-01T12:00:00Z",
                "slots": {"main": {"content": LION_WIKITEXT}},
            }
        ],
    }
    page.update(overrides)
    return page


def query_response(page: dict[str, Any], **query: Any) -> ApiResponse:
    """Wrap a page in a formatversion=2 query response."""
    return json_response({"batchcomplete": True, "query": {"pages": [page], **query}})


@pytest.fixture
def adapter() -> WikipediaPageAdapter:
    """Create a page adapter."""
    return WikipediaPageAdapter(ACTION, REST)


class TestTitles:
    """Tests for title normalization and slugs."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("panthera_leo", "Panthera leo"),
            ("  Lion  ", "Lion"),
            ("Lion#Taxonomy", "Lion"),
            ("african   lion", "African lion"),
            ("#Top", ""),
        ],
    )
    def test_normalize_title(self, raw: str, expected: str) -> None:
        """Titles compare the way MediaWiki compares them."""
        assert normalize_title(raw) == expected

    def test_slug_escapes(self) -> None:
        """Slugs use underscores and percent-encoding."""
        assert to_slug("panthera leo") == "Panthera_leo"
        assert to_slug("Lion/Cub") == "Lion%2FCub"


class TestTaxoboxDetection:
    """Tests for taxobox detection."""

    def test_template_detected_case_insensitive(self) -> None:
        """Any taxobox-family template counts."""
        assert has_taxobox_template(LION_WIKITEXT) is True
        assert has_taxobox_template("{{Automatic taxobox}}") is True
        assert has_taxobox_template("{{Infobox person}}") is False

    def test_biota_infobox(self) -> None:
        """Rendered biota infoboxes are detected."""
        assert has_biota_infobox(BIOTA_HTML) is True
        assert has_biota_infobox('<table class="infobox"></table>') is False


class TestResolveTitleChain:
    """Tests for normalization and redirect resolution."""

    def test_no_mappings(self) -> None:
        """A canonical request has an empty chain."""
        assert resolve_title_chain("Lion", [], []) == ([], False)

    def test_normalization_only(self) -> None:
        """Normalization is not a redirect."""
        chain, redirected = resolve_title_chain(
            "lion", [{"from": "lion", "to": "Lion"}], []
        )

        assert chain == ["Lion"]
        assert redirected is False

    def test_normalized_then_redirected(self) -> None:
        """Steps are followed in order."""
        chain, redirected = resolve_title_chain(
            "african lion",
            [{"from": "african lion", "to": "African lion"}],
            [{"from": "African lion", "to": "Lion"}],
        )

        assert chain == ["African lion", "Lion"]
        assert redirected is True

    def test_cycle_rejected(self) -> None:
        """Redirect loops are decode errors."""
        with pytest.raises(DecodeError, match="cycle"):
            resolve_title_chain(
                "A", [], [{"from": "A", "to": "B"}, {"from": "B", "to": "A"}]
            )


class TestRequests:
    """Tests for request construction."""

    def test_query_request(self, adapter: WikipediaPageAdapter) -> None:
        """The metadata query follows redirects."""
        request = adapter.build_query_request("Lion")

        assert request.method == "POST"
        assert request.form["titles"] == "Lion"
        assert request.form["redirects"] == "1"
        assert request.form["formatversion"] == "2"

    def test_content_request(self, adapter: WikipediaPageAdapter) -> None:
        """Content comes from the REST mobile-html route."""
        request = adapter.build_content_request("Panthera leo")

        assert request.url == (
            "https://en.wikipedia.org/api/rest_v1/page/mobile-html/Panthera_leo"
        )
        assert request.headers["Accept"] == "text/html"


class TestDecodeQuery:
    """Tests for metadata decoding."""

    def test_plain_page(self, adapter: WikipediaPageAdapter) -> None:
        """Page properties become attributes."""
        result = adapter.decode_query("Lion", query_response(lion_page()))

        assert isinstance(result, DecodedEntity)
        assert result.external_id == "Lion"
        assert result.payload == ""
        assert result.attributes == {
            "page_id": 36896,
            "revision_id": 1234567,
            "revision_timestamp": "2024-05-01T12:00:00Z",
            "categories": ["Panthera", "Apex predators"],
            "is_disambiguation": False,
            "is_set_index": False,
            "has_taxobox": True,
        }
        assert result.lookups == []
        assert result.redirect_hops == []

    def test_missing_page(self, adapter: WikipediaPageAdapter) -> None:
        """Missing pages yield a missing marker."""
        page = {"ns": 0, "title": "Nosuchcat", "missing": True}

        result = adapter.decode_query("Nosuchcat", query_response(page))

        assert result == MissingEntity(requested_id="Nosuchcat", reason="missing")

    def test_invalid_title(self, adapter: WikipediaPageAdapter) -> None:
        """Invalid titles report the provider's reason."""
        page = {"title": "<>", "invalid": True, "invalidreason": "illegal char"}

        result = adapter.decode_query("<>", query_response(page))

        assert result == MissingEntity(requested_id="<>", reason="illegal char")

    def test_redirect_chain(self, adapter: WikipediaPageAdapter) -> None:
        """Redirects produce hops ending at the canonical title."""
        response = query_response(
            lion_page(),
            redirects=[
                {"from": "African lion", "to": "Panthera leo"},
                {"from": "Panthera leo", "to": "Lion"},
            ],
        )

        result = adapter.decode_query("African lion", response)

        assert isinstance(result, DecodedEntity)
        assert result.redirect_hops == ["Panthera leo", "Lion"]
        assert result.is_redirected is True

    def test_normalization_becomes_lookup(
        self, adapter: WikipediaPageAdapter
    ) -> None:
        """A normalization-only difference is a lookup row, not a redirect."""
        response = query_response(
            lion_page(), normalized=[{"from": "lion", "to": "Lion"}]
        )

        result = adapter.decode_query("lion", response)

        assert isinstance(result, DecodedEntity)
        assert result.redirect_hops == []
        assert result.lookups == [LookupRow(lookup_id="lion", scope="normalized")]

    def test_chain_not_ending_at_page(self, adapter: WikipediaPageAdapter) -> None:
        """A chain that does not reach the returned page is rejected."""
        response = query_response(
            lion_page(), redirects=[{"from": "Big cat", "to": "Felidae"}]
        )

        with pytest.raises(DecodeError, match="chain ends"):
            adapter.decode_query("Big cat", response)

    def test_disambiguation_flags(self, adapter: WikipediaPageAdapter) -> None:
        """Disambiguation comes from page props or categories."""
        page = lion_page(
            pageprops={"disambiguation": ""},
            categories=[{"title": "Category:Set index articles"}],
        )

        result = adapter.decode_query("Lion", query_response(page))

        assert isinstance(result, DecodedEntity)
        assert result.attributes["is_disambiguation"] is True
        assert result.attributes["is_set_index"] is True

    def test_api_error(self, adapter: WikipediaPageAdapter) -> None:
        """API errors are decode failures."""
        data = {"error": {"code": "badvalue", "info": "Unrecognized value"}}

        with pytest.raises(DecodeError, match="Unrecognized value"):
            adapter.decode_query("Lion", json_response(data))

    def test_no_pages(self, adapter: WikipediaPageAdapter) -> None:
        """A query without pages is rejected."""
        with pytest.raises(DecodeError, match="no pages"):
            adapter.decode_query("Lion", json_response({"query": {"pages": []}}))


class TestAttachContent:
    """Tests for combining metadata with rendered HTML."""

    def test_html_becomes_payload(self, adapter: WikipediaPageAdapter) -> None:
        """The rendered page is the stored payload."""
        page = adapter.decode_query("Lion", query_response(lion_page()))
        assert isinstance(page, DecodedEntity)
        html = ApiResponse(url=REST, status_code=200, body=b"<html>lion</html>")

        result = adapter.attach_content(page, html)

        assert result.payload == "<html>lion</html>"
        assert result.external_id == "Lion"

    def test_infobox_sets_taxobox(self, adapter: WikipediaPageAdapter) -> None:
        """A biota infobox marks a page without a taxobox template."""
        revisions = [{"revid": 1, "slots": {"main": {"content": "plain"}}}]
        page = adapter.decode_query(
            "Lion", query_response(lion_page(revisions=revisions))
        )
        assert isinstance(page, DecodedEntity)
        assert page.attributes["has_taxobox"] is False
        html = ApiResponse(url=REST, status_code=200, body=BIOTA_HTML.encode())

        result = adapter.attach_content(page, html)

        assert result.attributes["has_taxobox"] is True
