"""Unit tests for IUCN taxa and assessment decoding."""

import json
from typing import Any

import pytest

from taxaharvest.fetch.models import ApiResponse
from taxaharvest.ingest.errors import DecodeError
from taxaharvest.providers.iucn import IucnAssessmentAdapter, IucnTaxaAdapter
from taxaharvest.store.models import LookupRow


BASE_URL = "https://api.iucnredlist.org/"


def json_response(data: Any) -> ApiResponse:
    """Wrap a JSON document in a 200 response."""
    return ApiResponse(
        url="https://api.iucnredlist.org/api/v4/x",
        status_code=200,
        body=json.dumps(data).encode(),
    )


@pytest.fixture
def taxa() -> IucnTaxaAdapter:
    """Create a taxa adapter."""
    return IucnTaxaAdapter(BASE_URL, token="secret")


LION_TAXA = {
    "sis_id": 15951,
    "taxon": {
        "scientific_name": "Panthera leo",
        "species_taxa": [{"sis_id": 15951}],
        "subpopulation_taxa": [{"sis_id": 68933833}, {"sis_id": "68933833"}],
        "infrarank_taxa": [{"sis_id": 68933812}, "junk"],
    },
    "assessments": [
        {"assessment_id": 259030422, "latest": True},
        {"assessment_id": 107265605, "latest": False},
        {"year_published": "2008"},
    ],
}


class TestIucnRequests:
    """Tests for request construction."""

    def test_taxa_request(self, taxa: IucnTaxaAdapter) -> None:
        """Taxa are fetched by SIS id with a bearer token."""
        request = taxa.build_request(" 15951 ")

        assert request.url == "https://api.iucnredlist.org/api/v4/taxa/sis/15951"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_assessment_request(self) -> None:
        """Assessments are fetched by assessment id."""
        adapter = IucnAssessmentAdapter(BASE_URL, token="secret")

        request = adapter.build_request("259030422")

        assert request.url == (
            "https://api.iucnredlist.org/api/v4/assessment/259030422"
        )

    def test_non_numeric_id_rejected(self, taxa: IucnTaxaAdapter) -> None:
        """Only numeric ids are valid."""
        with pytest.raises(DecodeError):
            taxa.build_request("Panthera leo")


class TestIucnTaxaDecode:
    """Tests for taxa documents."""

    def test_root_id_and_lookups(self, taxa: IucnTaxaAdapter) -> None:
        """Related SIS ids become scoped lookup rows, deduplicated."""
        entity = taxa.decode("15951", json_response(LION_TAXA))

        assert entity.external_id == "15951"
        assert entity.canonical_title == "Panthera leo"
        assert entity.lookups == [
            LookupRow(lookup_id="68933833", scope="subpopulation"),
            LookupRow(lookup_id="68933812", scope="infrarank"),
        ]

    def test_assessment_headers(self, taxa: IucnTaxaAdapter) -> None:
        """Assessment ids are collected and the latest is flagged."""
        entity = taxa.decode("15951", json_response(LION_TAXA))

        assert entity.attributes["assessment_ids"] == ["259030422", "107265605"]
        assert entity.attributes["latest_assessment_id"] == "259030422"
        assert entity.related_ids == ["259030422", "107265605"]

    def test_payload_is_response_text(self, taxa: IucnTaxaAdapter) -> None:
        """The raw body is stored as payload."""
        response = json_response(LION_TAXA)

        entity = taxa.decode("15951", response)

        assert entity.payload == response.text
        assert entity.raw_record == LION_TAXA

    def test_requested_subpopulation_resolves(self, taxa: IucnTaxaAdapter) -> None:
        """Requesting a related id keys the document by its root."""
        entity = taxa.decode("68933833", json_response(LION_TAXA))

        assert entity.external_id == "15951"
        assert entity.requested_id == "68933833"
        assert entity.is_redirected is False

    def test_unlisted_requested_id_kept_as_lookup(
        self, taxa: IucnTaxaAdapter
    ) -> None:
        """An unlisted requested id still resolves to the document."""
        entity = taxa.decode("999", json_response({"sis_id": 15951}))

        assert entity.lookups == [LookupRow(lookup_id="999", scope="requested")]

    def test_missing_sis_id(self, taxa: IucnTaxaAdapter) -> None:
        """A document without sis_id is rejected."""
        with pytest.raises(DecodeError, match="no sis_id"):
            taxa.decode("15951", json_response({"taxon": {}}))

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    def test_non_object_body(self, taxa: IucnTaxaAdapter, body: bytes) -> None:
        """Bodies that are not JSON objects are rejected."""
        response = ApiResponse(url="https://x", status_code=200, body=body)

        with pytest.raises(DecodeError):
            taxa.decode("15951", response)


class TestIucnAssessmentDecode:
    """Tests for assessment documents."""

    def test_parent_from_sis_taxon_id(self) -> None:
        """The taxon id links the assessment to its taxon."""
        adapter = IucnAssessmentAdapter(BASE_URL, token="secret")
        data = {
            "assessment_id": 259030422,
            "sis_taxon_id": 15951,
            "year_published": "2024",
            "red_list_category": {"code": "VU"},
        }

        entity = adapter.decode("259030422", json_response(data))

        assert entity.external_id == "259030422"
        assert entity.parent_external_id == "15951"
        assert entity.attributes == {"red_list_category": "VU", "year_published": 2024}

    def test_parent_falls_back_to_taxon(self) -> None:
        """Without sis_taxon_id the nested taxon id is used."""
        adapter = IucnAssessmentAdapter(BASE_URL, token="secret")
        data = {"assessment_id": 1, "taxon": {"sis_id": 15951}}

        entity = adapter.decode("1", json_response(data))

        assert entity.parent_external_id == "15951"
        assert entity.attributes["red_list_category"] is None

    def test_missing_assessment_id(self) -> None:
        """A document without assessment_id is rejected."""
        adapter = IucnAssessmentAdapter(BASE_URL, token="secret")

        with pytest.raises(DecodeError, match="no assessment_id"):
            adapter.decode("1", json_response({"sis_taxon_id": 15951}))
