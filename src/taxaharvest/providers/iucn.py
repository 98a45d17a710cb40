"""IUCN Red List API adapters for taxa and assessments."""

from typing import Any

import structlog

from taxaharvest.fetch.constants import HTTP_STATUS_NOT_FOUND
from taxaharvest.fetch.errors import PermanentApiError
from taxaharvest.fetch.models import ApiRequest, ApiResponse
from taxaharvest.ingest.errors import DecodeError
from taxaharvest.ingest.models import DecodedEntity, MissingEntity
from taxaharvest.ingest.orchestrator import ImportSession
from taxaharvest.providers.common import load_json_object, optional_bool, optional_int
from taxaharvest.store.models import LookupRow


logger = structlog.get_logger()

TAXA_ENDPOINT = "iucn.taxa"
ASSESSMENT_ENDPOINT = "iucn.assessment"

# Scope name for each alternative-id list under `taxon`
LOOKUP_SCOPES: tuple[tuple[str, str], ...] = (
    ("species_taxa", "species"),
    ("subpopulation_taxa", "subpopulation"),
    ("infrarank_taxa", "infrarank"),
)


def _numeric_id(external_id: str) -> str:
    value = external_id.strip()
    if not value.isdigit():
        raise DecodeError(external_id, "IUCN ids must be numeric")
    return value


class IucnTaxaAdapter:
    """Fetches `/api/v4/taxa/sis/{id}` documents.

    A taxa document is keyed by its root SIS id. Species, subpopulation,
    and infrarank SIS ids listed under `taxon` become lookup rows, so any
    of them resolves to the cached document.
    """

    def __init__(self, base_url: str, token: str) -> None:
        """Initialize the adapter.

        Args:
            base_url: API base URL without trailing slash.
            token: Bearer token.
        """
        self._base_url = base_url.rstrip("/")
        self._token = token

    @property
    def endpoint(self) -> str:
        """Endpoint key for the failure ledger."""
        return TAXA_ENDPOINT

    def build_request(self, external_id: str) -> ApiRequest:
        """Build the taxa request for a SIS id."""
        return ApiRequest(
            url=f"{self._base_url}/api/v4/taxa/sis/{_numeric_id(external_id)}",
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
            },
        )

    def fetch(
        self, session: ImportSession, external_id: str
    ) -> DecodedEntity | MissingEntity:
        """Fetch and decode one taxa document."""
        try:
            response = session.send(self.build_request(external_id))
        except PermanentApiError as e:
            if e.status == HTTP_STATUS_NOT_FOUND:
                return MissingEntity(requested_id=external_id, reason="not_found")
            raise
        return self.decode(external_id, response)

    def decode(self, external_id: str, response: ApiResponse) -> DecodedEntity:
        """Validate a taxa document.

        Args:
            external_id: Requested SIS id.
            response: Provider response.

        Returns:
            Decoded entity keyed by root SIS id.

        Raises:
            DecodeError: If `sis_id` is absent.
        """
        data = load_json_object(external_id, response)
        root_id = optional_int(data.get("sis_id"))
        if root_id is None:
            raise DecodeError(external_id, "response has no sis_id")
        root = str(root_id)

        taxon = data.get("taxon")
        taxon = taxon if isinstance(taxon, dict) else {}

        lookups: dict[str, LookupRow] = {}
        for property_name, scope in LOOKUP_SCOPES:
            entries = taxon.get(property_name)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                sis_id = optional_int(entry.get("sis_id"))
                if sis_id is None or str(sis_id) == root:
                    continue
                lookup_id = str(sis_id)
                lookups.setdefault(
                    lookup_id, LookupRow(lookup_id=lookup_id, scope=scope)
                )

        requested = external_id.strip()
        if requested != root and requested not in lookups:
            lookups[requested] = LookupRow(lookup_id=requested, scope="requested")

        assessment_ids, latest_id = self._assessment_headers(data.get("assessments"))
        scientific_name = taxon.get("scientific_name")
        if not isinstance(scientific_name, str):
            scientific_name = None

        return DecodedEntity(
            external_id=root,
            requested_id=requested,
            payload=response.text,
            canonical_title=scientific_name,
            attributes={
                "assessment_ids": assessment_ids,
                "latest_assessment_id": latest_id,
            },
            lookups=list(lookups.values()),
            related_ids=assessment_ids,
            raw_record=data,
        )

    @staticmethod
    def _assessment_headers(entries: Any) -> tuple[list[str], str | None]:
        """Collect assessment ids and the one flagged latest."""
        if not isinstance(entries, list):
            return [], None

        ids: list[str] = []
        latest: str | None = None
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            assessment_id = optional_int(entry.get("assessment_id"))
            if assessment_id is None:
                continue
            ids.append(str(assessment_id))
            if optional_bool(entry.get("latest")):
                latest = str(assessment_id)
        return ids, latest


class IucnAssessmentAdapter:
    """Fetches `/api/v4/assessment/{id}` documents."""

    def __init__(self, base_url: str, token: str) -> None:
        """Initialize the adapter.

        Args:
            base_url: API base URL without trailing slash.
            token: Bearer token.
        """
        self._base_url = base_url.rstrip("/")
        self._token = token

    @property
    def endpoint(self) -> str:
        """Endpoint key for the failure ledger."""
        return ASSESSMENT_ENDPOINT

    def build_request(self, external_id: str) -> ApiRequest:
        """Build the assessment request."""
        return ApiRequest(
            url=f"{self._base_url}/api/v4/assessment/{_numeric_id(external_id)}",
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
            },
        )

    def fetch(
        self, session: ImportSession, external_id: str
    ) -> DecodedEntity | MissingEntity:
        """Fetch and decode one assessment."""
        try:
            response = session.send(self.build_request(external_id))
        except PermanentApiError as e:
            if e.status == HTTP_STATUS_NOT_FOUND:
                return MissingEntity(requested_id=external_id, reason="not_found")
            raise
        return self.decode(external_id, response)

    def decode(self, external_id: str, response: ApiResponse) -> DecodedEntity:
        """Validate an assessment document.

        The taxon id comes from `sis_taxon_id`, falling back to `taxon.sis_id`.

        Raises:
            DecodeError: If `assessment_id` is absent.
        """
        data = load_json_object(external_id, response)
        assessment_id = optional_int(data.get("assessment_id"))
        if assessment_id is None:
            raise DecodeError(external_id, "response has no assessment_id")

        parent = optional_int(data.get("sis_taxon_id"))
        taxon = data.get("taxon")
        if parent is None and isinstance(taxon, dict):
            parent = optional_int(taxon.get("sis_id"))

        category = data.get("red_list_category")
        category_code = category.get("code") if isinstance(category, dict) else None

        return DecodedEntity(
            external_id=str(assessment_id),
            requested_id=external_id.strip(),
            payload=response.text,
            parent_external_id=str(parent) if parent is not None else None,
            attributes={
                "red_list_category": category_code,
                "year_published": optional_int(data.get("year_published")),
            },
            raw_record=data,
        )
