"""Wikidata entity adapter and SPARQL seed stream."""

import json
import re
from typing import Any

import structlog

from taxaharvest.fetch.client import RetryClient
from taxaharvest.fetch.models import ApiRequest, ApiResponse
from taxaharvest.ingest.errors import DecodeError
from taxaharvest.ingest.models import DecodedEntity, MissingEntity, SeedPage
from taxaharvest.ingest.orchestrator import ImportSession
from taxaharvest.providers.common import load_json_object, optional_int
from taxaharvest.store.models import CandidateRecord


logger = structlog.get_logger()

ENTITY_ENDPOINT = "wikidata.entity"
SEED_CURSOR_KEY = "wikidata_taxa_cursor"

SPARQL_ACCEPT = "application/sparql-results+json"

_QID_PATTERN = re.compile(r"^Q\d+$")

# Properties read from entity claims
PROP_IUCN_STATUS = "P141"
PROP_IUCN_TAXON_ID = "P627"
PROP_TAXON_RANK = "P105"
PROP_PARENT_TAXON = "P171"

TAXON_QUERY_TEMPLATE = """PREFIX wd: <http://www.wikidata.org/entity/>
PREFIX wdt: <http://www.wikidata.org/prop/direct/>
PREFIX xsd: <http://www.w3.org/2001/XMLSchema#>

SELECT ?item ?qid (SUM(?flag141) AS ?hasP141) (SUM(?flag627) AS ?hasP627)
WHERE {{
  {{
    ?item wdt:P141 ?status .
    BIND(1 AS ?flag141)
    BIND(0 AS ?flag627)
  }}
  UNION
  {{
    ?item wdt:P627 ?taxonId .
    BIND(0 AS ?flag141)
    BIND(1 AS ?flag627)
  }}
  ?item wdt:P31 wd:Q16521 .
  BIND(xsd:integer(STRAFTER(STR(?item), "http://www.wikidata.org/entity/Q")) AS ?qid)
  FILTER(?qid > {cursor})
}}
GROUP BY ?item ?qid
ORDER BY ?qid
LIMIT {limit}"""


def normalize_qid(value: str) -> str:
    """Normalize an entity id to upper-case "Q123" form.

    Raises:
        DecodeError: If the value is not a QID.
    """
    text = value.strip().upper()
    if not _QID_PATTERN.match(text):
        raise DecodeError(value, "not a Wikidata item id")
    return text


def build_taxon_query(cursor: int, limit: int) -> str:
    """Render the taxon enumeration query for one page.

    Args:
        cursor: Exclusive lower bound on numeric QIDs.
        limit: Page size.

    Returns:
        SPARQL query text.
    """
    return TAXON_QUERY_TEMPLATE.format(cursor=cursor, limit=limit)


def _claims(entity: dict[str, Any], prop: str) -> list[dict[str, Any]]:
    claims = entity.get("claims")
    if not isinstance(claims, dict):
        return []
    statements = claims.get(prop)
    if not isinstance(statements, list):
        return []
    return [s for s in statements if isinstance(s, dict)]


def _datavalue(statement: dict[str, Any]) -> Any:
    mainsnak = statement.get("mainsnak")
    if not isinstance(mainsnak, dict):
        return None
    datavalue = mainsnak.get("datavalue")
    if not isinstance(datavalue, dict):
        return None
    return datavalue.get("value")


def _item_ids(entity: dict[str, Any], prop: str) -> list[str]:
    """Item ids referenced by a property, in statement order."""
    ids: list[str] = []
    for statement in _claims(entity, prop):
        value = _datavalue(statement)
        if isinstance(value, dict) and isinstance(value.get("id"), str):
            ids.append(value["id"])
    return ids


def _string_values(entity: dict[str, Any], prop: str) -> list[str]:
    values: list[str] = []
    for statement in _claims(entity, prop):
        value = _datavalue(statement)
        if isinstance(value, str) and value.strip():
            values.append(value.strip())
    return values


def _language_value(entity: dict[str, Any], field: str, language: str) -> str | None:
    entries = entity.get(field)
    if not isinstance(entries, dict):
        return None
    entry = entries.get(language)
    if isinstance(entry, dict) and isinstance(entry.get("value"), str):
        return entry["value"]
    return None


class WikidataEntityAdapter:
    """Fetches items through `wbgetentities`.

    The payload stored is the entity object itself, serialized with sorted
    keys, so response envelope noise never registers as a change.
    """

    def __init__(self, api_endpoint: str, language: str = "en") -> None:
        """Initialize the adapter.

        Args:
            api_endpoint: Action API URL.
            language: Label and description language.
        """
        self._api_endpoint = api_endpoint
        self._language = language

    @property
    def endpoint(self) -> str:
        """Endpoint key for the failure ledger."""
        return ENTITY_ENDPOINT

    def build_request(self, external_id: str) -> ApiRequest:
        """Build the `wbgetentities` form request."""
        return ApiRequest(
            method="POST",
            url=self._api_endpoint,
            form={
                "action": "wbgetentities",
                "format": "json",
                "formatversion": "2",
                "props": "info|labels|descriptions|claims",
                "ids": normalize_qid(external_id),
                "languages": self._language,
                "normalize": "1",
            },
            headers={"Accept": "application/json"},
        )

    def fetch(
        self, session: ImportSession, external_id: str
    ) -> DecodedEntity | MissingEntity:
        """Fetch and decode one item."""
        response = session.send(self.build_request(external_id))
        return self.decode(external_id, response)

    def decode(
        self, external_id: str, response: ApiResponse
    ) -> DecodedEntity | MissingEntity:
        """Decode a `wbgetentities` response.

        Args:
            external_id: Requested QID.
            response: Provider response.

        Returns:
            The decoded item, or a missing marker.

        Raises:
            DecodeError: If the response carries no entity.
        """
        data = load_json_object(external_id, response)
        if "error" in data:
            error = data["error"]
            info = error.get("info") if isinstance(error, dict) else error
            raise DecodeError(external_id, f"API error: {info}")

        entities = data.get("entities")
        if not isinstance(entities, dict) or not entities:
            raise DecodeError(external_id, "response has no entities")

        # First entity wins
        entity = next(iter(entities.values()))
        if not isinstance(entity, dict):
            raise DecodeError(external_id, "entity is not an object")

        requested = normalize_qid(external_id)
        if "missing" in entity:
            return MissingEntity(requested_id=requested)

        entity_id = entity.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            raise DecodeError(external_id, "entity has no id")
        canonical = normalize_qid(entity_id)

        redirects = entity.get("redirects")
        if isinstance(redirects, dict) and isinstance(redirects.get("to"), str):
            canonical = normalize_qid(redirects["to"])

        p627_ids = _string_values(entity, PROP_IUCN_TAXON_ID)
        ranks = _item_ids(entity, PROP_TAXON_RANK)
        parents = _item_ids(entity, PROP_PARENT_TAXON)

        return DecodedEntity(
            external_id=canonical,
            requested_id=requested,
            payload=json.dumps(entity, sort_keys=True, ensure_ascii=False),
            canonical_title=_language_value(entity, "labels", self._language),
            parent_external_id=parents[0] if parents else None,
            attributes={
                "has_p141": bool(_claims(entity, PROP_IUCN_STATUS)),
                "has_p627": bool(p627_ids),
                "rank_qid": ranks[0] if ranks else None,
                "p627_ids": p627_ids,
                "description": _language_value(
                    entity, "descriptions", self._language
                ),
            },
            redirect_hops=[canonical] if canonical != requested else [],
            raw_record=entity,
        )


class WikidataSeedSource:
    """Pages through taxon items carrying an IUCN status or taxon id.

    Pages are requested directly through the client; seed queries are not
    recorded as import runs.
    """

    def __init__(self, client: RetryClient, sparql_endpoint: str) -> None:
        """Initialize the seed source.

        Args:
            client: Retry client paced for the SPARQL endpoint.
            sparql_endpoint: SPARQL endpoint URL.
        """
        self._client = client
        self._sparql_endpoint = sparql_endpoint

    @property
    def cursor_key(self) -> str:
        """Name of the persisted cursor."""
        return SEED_CURSOR_KEY

    def build_request(self, after: int, size: int) -> ApiRequest:
        """Build the SPARQL request for one page."""
        return ApiRequest(
            method="POST",
            url=self._sparql_endpoint,
            form={"query": build_taxon_query(after, size)},
            headers={"Accept": SPARQL_ACCEPT},
        )

    def fetch_page(self, after: int, size: int) -> SeedPage:
        """Fetch up to `size` taxa with QIDs above `after`.

        Raises:
            ApiError: If the request fails.
            DecodeError: If the result set is malformed.
        """
        response = self._client.send(self.build_request(after, size))
        records = self.parse(response, after)
        logger.debug(
            "seed_page_fetched",
            after=after,
            requested=size,
            rows=len(records),
        )
        return SeedPage(records=records, requested=size)

    @staticmethod
    def parse(response: ApiResponse, after: int) -> list[CandidateRecord]:
        """Parse SPARQL JSON results into candidate records.

        Args:
            response: SPARQL response.
            after: Cursor the page was requested after, for error context.

        Returns:
            Candidate records in result order.

        Raises:
            DecodeError: If the body or any binding is malformed.
        """
        context = f"sparql:{after}"
        data = load_json_object(context, response)
        results = data.get("results")
        bindings = results.get("bindings") if isinstance(results, dict) else None
        if not isinstance(bindings, list):
            raise DecodeError(context, "response has no results.bindings")

        records: list[CandidateRecord] = []
        for binding in bindings:
            numeric_id = _binding_int(binding, "qid")
            if numeric_id is None:
                raise DecodeError(context, f"binding without numeric qid: {binding}")
            records.append(
                CandidateRecord(
                    external_id=f"Q{numeric_id}",
                    sort_key=numeric_id,
                    attributes={
                        "has_p141": (_binding_int(binding, "hasP141") or 0) > 0,
                        "has_p627": (_binding_int(binding, "hasP627") or 0) > 0,
                    },
                )
            )
        return records


def _binding_int(binding: Any, name: str) -> int | None:
    if not isinstance(binding, dict):
        return None
    element = binding.get(name)
    if not isinstance(element, dict):
        return None
    return optional_int(element.get("value"))
