"""Composition of stores, clients, and adapters for each provider stream.

Every builder opens its resources on the caller's `ExitStack`, so a single
`with ExitStack() as resources:` block closes clients and stores together.
"""

import uuid
from contextlib import ExitStack

import structlog

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.client import RetryClient
from taxaharvest.fetch.models import RetryPolicy
from taxaharvest.ingest.cursor import CursorController
from taxaharvest.ingest.names import NameResolver
from taxaharvest.ingest.orchestrator import IngestionOrchestrator
from taxaharvest.observability.logging import configure_logging
from taxaharvest.providers.iucn import IucnAssessmentAdapter, IucnTaxaAdapter
from taxaharvest.providers.wikidata import WikidataEntityAdapter, WikidataSeedSource
from taxaharvest.providers.wikipedia import WikipediaPageAdapter
from taxaharvest.settings.app import HarvestSettings
from taxaharvest.store.store import CacheStore


logger = structlog.get_logger()

IUCN_TAXA_STORE = "iucn_taxa"
IUCN_ASSESSMENT_STORE = "iucn_assessments"
WIKIDATA_STORE = "wikidata"
WIKIPEDIA_STORE = "wikipedia"


def configure_harvest_logging(settings: HarvestSettings) -> None:
    """Configure structlog from `HARVEST_LOG_LEVEL` and `HARVEST_LOG_JSON`."""
    configure_logging(
        settings.ingestion.log_level,
        json_format=settings.ingestion.log_json,
    )


def open_store(
    settings: HarvestSettings,
    name: str,
    resources: ExitStack,
    read_only: bool = False,
    run_id: str | None = None,
) -> CacheStore:
    """Open a provider store under the cache directory.

    Args:
        settings: Harvest settings.
        name: Store file stem.
        resources: Stack that closes the store.
        read_only: Open a reporting handle instead of a writer.
        run_id: Run identifier for logging.

    Returns:
        Connected store.
    """
    store = CacheStore(settings.cache_path(name), read_only=read_only, run_id=run_id)
    store.connect()
    resources.callback(store.close)
    return store


def _open_client(  # noqa: PLR0913
    resources: ExitStack,
    name: str,
    policy: RetryPolicy,
    timeout_seconds: float,
    max_concurrency: int,
    delay_ms: int,
    headers: dict[str, str],
    cancel: CancellationToken,
    run_id: str,
) -> RetryClient:
    client = RetryClient(
        name=name,
        policy=policy,
        timeout_seconds=timeout_seconds,
        max_concurrency=max_concurrency,
        min_interval_seconds=delay_ms / 1000,
        default_headers=headers,
        cancel=cancel,
        run_id=run_id,
    )
    resources.callback(client.close)
    return client


def _iucn_client(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken,
    run_id: str,
) -> RetryClient:
    iucn = settings.iucn
    return _open_client(
        resources,
        name="iucn.api",
        policy=iucn.retry_policy(),
        timeout_seconds=iucn.timeout_seconds,
        max_concurrency=iucn.max_concurrency,
        delay_ms=0,
        headers={"Accept": "application/json"},
        cancel=cancel,
        run_id=run_id,
    )


def build_iucn_taxa_orchestrator(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken | None = None,
    name_resolver: NameResolver | None = None,
    run_id: str | None = None,
) -> IngestionOrchestrator:
    """Build the IUCN taxa stream.

    Assessment ids found in taxa documents are registered as candidates of
    the assessment store.

    Args:
        settings: Harvest settings.
        resources: Stack that closes the client and stores.
        cancel: Run-level cancellation token.
        name_resolver: Produces name rows for cached taxa.
        run_id: Run identifier for logging.

    Returns:
        Orchestrator for `iucn_taxa.sqlite`.

    Raises:
        ValueError: If IUCN_API_TOKEN is not configured.
    """
    token = settings.iucn.require_token()
    run_id = run_id or str(uuid.uuid4())
    cancel = cancel or CancellationToken()
    store = open_store(settings, IUCN_TAXA_STORE, resources, run_id=run_id)
    assessments = open_store(
        settings, IUCN_ASSESSMENT_STORE, resources, run_id=run_id
    )
    client = _iucn_client(settings, resources, cancel, run_id)
    logger.info("stream_built", stream=IUCN_TAXA_STORE, run_id=run_id)
    return IngestionOrchestrator(
        store,
        client,
        IucnTaxaAdapter(settings.iucn.base_url, token),
        settings.ingestion,
        cancel=cancel,
        name_resolver=name_resolver,
        related_store=assessments,
        run_id=run_id,
    )


def build_iucn_assessment_orchestrator(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken | None = None,
    run_id: str | None = None,
) -> IngestionOrchestrator:
    """Build the IUCN assessment stream over `iucn_assessments.sqlite`.

    Raises:
        ValueError: If IUCN_API_TOKEN is not configured.
    """
    token = settings.iucn.require_token()
    run_id = run_id or str(uuid.uuid4())
    cancel = cancel or CancellationToken()
    store = open_store(settings, IUCN_ASSESSMENT_STORE, resources, run_id=run_id)
    client = _iucn_client(settings, resources, cancel, run_id)
    logger.info("stream_built", stream=IUCN_ASSESSMENT_STORE, run_id=run_id)
    return IngestionOrchestrator(
        store,
        client,
        IucnAssessmentAdapter(settings.iucn.base_url, token),
        settings.ingestion,
        cancel=cancel,
        run_id=run_id,
    )


def build_wikidata_orchestrator(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken | None = None,
    name_resolver: NameResolver | None = None,
    run_id: str | None = None,
) -> IngestionOrchestrator:
    """Build the Wikidata entity stream over `wikidata.sqlite`."""
    wikidata = settings.wikidata
    run_id = run_id or str(uuid.uuid4())
    cancel = cancel or CancellationToken()
    store = open_store(settings, WIKIDATA_STORE, resources, run_id=run_id)
    client = _open_client(
        resources,
        name="wikidata.api",
        policy=wikidata.retry_policy(),
        timeout_seconds=wikidata.timeout_seconds,
        max_concurrency=wikidata.max_concurrency,
        delay_ms=wikidata.request_delay_ms,
        headers={"User-Agent": wikidata.user_agent},
        cancel=cancel,
        run_id=run_id,
    )
    logger.info("stream_built", stream=WIKIDATA_STORE, run_id=run_id)
    return IngestionOrchestrator(
        store,
        client,
        WikidataEntityAdapter(wikidata.api_endpoint),
        settings.ingestion,
        cancel=cancel,
        name_resolver=name_resolver,
        run_id=run_id,
    )


def build_wikidata_seed_controller(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken | None = None,
    run_id: str | None = None,
) -> CursorController:
    """Build the SPARQL seed stream writing candidates to `wikidata.sqlite`.

    SPARQL pages are serialized and paced by `WIKIDATA_SPARQL_DELAY_MS`.
    """
    wikidata = settings.wikidata
    run_id = run_id or str(uuid.uuid4())
    cancel = cancel or CancellationToken()
    store = open_store(settings, WIKIDATA_STORE, resources, run_id=run_id)
    client = _open_client(
        resources,
        name="wikidata.sparql",
        policy=wikidata.retry_policy(),
        timeout_seconds=wikidata.timeout_seconds,
        max_concurrency=1,
        delay_ms=wikidata.sparql_delay_ms,
        headers={"User-Agent": wikidata.user_agent},
        cancel=cancel,
        run_id=run_id,
    )
    logger.info("stream_built", stream="wikidata_seed", run_id=run_id)
    return CursorController(
        store,
        WikidataSeedSource(client, wikidata.sparql_endpoint),
        settings.ingestion.batch_tuning(wikidata.sparql_batch_size),
        cancel=cancel,
        run_id=run_id,
    )


def build_wikipedia_orchestrator(
    settings: HarvestSettings,
    resources: ExitStack,
    cancel: CancellationToken | None = None,
    name_resolver: NameResolver | None = None,
    run_id: str | None = None,
) -> IngestionOrchestrator:
    """Build the Wikipedia page stream over `wikipedia.sqlite`.

    The action API and REST endpoint get separate clients, each with its
    own pacing; the action client bounds worker concurrency.
    """
    wikipedia = settings.wikipedia
    run_id = run_id or str(uuid.uuid4())
    cancel = cancel or CancellationToken()
    store = open_store(settings, WIKIPEDIA_STORE, resources, run_id=run_id)
    headers = {"User-Agent": wikipedia.user_agent}
    action_client = _open_client(
        resources,
        name="wikipedia.action",
        policy=wikipedia.retry_policy(),
        timeout_seconds=wikipedia.timeout_seconds,
        max_concurrency=wikipedia.max_concurrency,
        delay_ms=wikipedia.action_delay_ms,
        headers=headers,
        cancel=cancel,
        run_id=run_id,
    )
    rest_client = _open_client(
        resources,
        name="wikipedia.rest",
        policy=wikipedia.retry_policy(),
        timeout_seconds=wikipedia.timeout_seconds,
        max_concurrency=wikipedia.max_concurrency,
        delay_ms=wikipedia.rest_delay_ms,
        headers=headers,
        cancel=cancel,
        run_id=run_id,
    )
    logger.info("stream_built", stream=WIKIPEDIA_STORE, run_id=run_id)
    return IngestionOrchestrator(
        store,
        action_client,
        WikipediaPageAdapter(
            wikipedia.action_endpoint,
            wikipedia.rest_endpoint,
            rest_client=rest_client,
        ),
        settings.ingestion,
        cancel=cancel,
        name_resolver=name_resolver,
        run_id=run_id,
    )
