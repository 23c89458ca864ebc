"""
Pipeline wiring.

Builds a PipelineContext from Config: one session for the process, one
RateLimiter per provider, and only the components whose credentials are
configured (or that need none).
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from adapters.broadband import BroadbandClient, select_premises
from adapters.epc_register import EpcRegisterClient
from adapters.geocoders import NominatimProvider, PostcodesIoProvider
from adapters.hmo_register import HmoRegisterAdapter
from adapters.http import JsonClient, RateLimiter, build_session
from adapters.listing_feed import ListingFeedAdapter
from adapters.planning_data import PlanningConstraintsClient, load_polygons
from core.geocoding import GeocodeCache, GeocodingService
from core.ingestion import require_source
from core.persistence import InMemoryPropertyRepository, NotificationSink
from core.pipeline import PipelineContext
from core.resolver import CanonicalResolver
from utils.config import Config


logger = logging.getLogger(__name__)


def _client(
    config: Config,
    session: requests.Session,
    base_url: str,
    name: str,
    interval: float,
    **kwargs,
) -> JsonClient:
    return JsonClient(
        base_url,
        RateLimiter(interval, name=name),
        session=session,
        timeout=config.request_timeout,
        **kwargs,
    )


def build_context(
    config: Optional[Config] = None,
    repository: Optional[InMemoryPropertyRepository] = None,
    sink: Optional[NotificationSink] = None,
    session: Optional[requests.Session] = None,
    geocode_cache: Optional[GeocodeCache] = None,
) -> PipelineContext:
    """
    Wire adapters and enrichment providers for a run.

    Components without credentials are left out and logged, so a partial
    configuration still runs the stages it can. Pass the returned context's
    credential_needs explicitly to demand a component.
    """
    config = config or Config.load()
    session = session or build_session()
    repository = repository or InMemoryPropertyRepository(
        persist_path=config.repository_file, autosave=False
    )

    adapters = []
    if config.has_credentials("listing_feed"):
        registration = require_source("listing_feed")
        adapters.append(
            ListingFeedAdapter(
                registration,
                _client(
                    config,
                    session,
                    config.listing_feed_base_url,
                    registration.source_id,
                    registration.rate_limit_seconds,
                ),
                config.listing_feed_api_key,
            )
        )
    else:
        logger.info("Listing feed disabled: LISTING_FEED_API_KEY not set")

    if config.has_credentials("hmo_register"):
        registration = require_source("hmo_register")
        adapters.append(
            HmoRegisterAdapter(
                registration,
                _client(
                    config,
                    session,
                    config.propertydata_base_url,
                    registration.source_id,
                    registration.rate_limit_seconds,
                ),
                config.propertydata_api_key,
            )
        )
    else:
        logger.info("HMO register disabled: PROPERTYDATA_API_KEY not set")

    geocoder = GeocodingService(
        NominatimProvider(
            _client(config, session, config.nominatim_url, "nominatim", config.nominatim_delay_seconds)
        ),
        PostcodesIoProvider(
            _client(
                config,
                session,
                config.postcodes_io_url,
                "postcodes_io",
                config.postcodes_io_delay_seconds,
            )
        ),
        cache=geocode_cache,
    )

    epc = None
    if config.has_credentials("epc"):
        epc = EpcRegisterClient(
            _client(
                config,
                session,
                config.epc_base_url,
                "epc_register",
                require_source("epc_register").rate_limit_seconds,
                auth=(config.epc_api_email, config.epc_api_key),
            )
        )
    else:
        logger.info("EPC enrichment disabled: EPC_API_EMAIL/EPC_API_KEY not set")

    broadband = None
    if config.has_credentials("broadband"):
        broadband = BroadbandClient(
            _client(
                config,
                session,
                config.ofcom_base_url,
                "broadband",
                require_source("broadband").rate_limit_seconds,
                headers={"Ocp-Apim-Subscription-Key": config.ofcom_api_key},
            )
        )
    else:
        logger.info("Broadband enrichment disabled: OFCOM_API_KEY not set")

    planning_constraints = None
    if config.has_credentials("planning_constraints"):
        planning_constraints = PlanningConstraintsClient(
            _client(
                config,
                session,
                config.searchland_base_url,
                "planning_constraints",
                require_source("planning_constraints").rate_limit_seconds,
                headers={"Authorization": f"Bearer {config.searchland_api_key}"},
            )
        )

    planning_features = None
    if config.planning_polygons_path:
        polygons_client = _client(config, session, config.planning_polygons_path, "planning_polygons", 0)
        planning_features = load_polygons(config.planning_polygons_path, polygons_client)

    context = PipelineContext(
        gateway=repository,
        resolver=CanonicalResolver(repository),
        adapters=adapters,
        geocoder=geocoder,
        epc=epc,
        broadband=broadband,
        select_premises=select_premises,
        planning_features=planning_features,
        planning_constraints=planning_constraints,
        config=config,
        max_workers=config.max_workers,
        max_errors=config.max_run_errors,
    )
    if sink is not None:
        context.sink = sink
    return context
