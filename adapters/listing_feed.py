"""
Property listings feed adapter.

Fetches rental and sale listings from a Zoopla-style paginated JSON feed
(`property_listings.json`) and normalises them for the resolver.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from adapters.http import JsonClient
from core.errors import MalformedUpstreamData
from core.ingestion import FetchCriteria, ListingNormaliser, SourceRegistration
from core.models import ListingType, NormalizedListing


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

LISTINGS_PATH = "property_listings.json"
PAGE_SIZE = 100
MAX_PAGES = 10
SEARCH_RADIUS_MILES = 1


class ListingFeedAdapter:
    """
    Paginated listings feed.

    One fetch covers one postcode (or area) and walks pages until the feed
    runs out, the result count is reached or MAX_PAGES is hit.
    """

    def __init__(
        self,
        registration: SourceRegistration,
        client: JsonClient,
        api_key: str,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
    ):
        self.registration = registration
        self._client = client
        self._api_key = api_key
        self._page_size = page_size
        self._max_pages = max_pages
        self.normaliser = ListingNormaliser(registration)

    def fetch(self, criteria: FetchCriteria) -> list[NormalizedListing]:
        listing_type = criteria.listing_type or ListingType.RENT
        params: dict[str, Any] = {
            "api_key": self._api_key,
            "listing_status": "rent" if listing_type == ListingType.RENT else "sale",
            "page_size": self._page_size,
            "radius": SEARCH_RADIUS_MILES,
        }
        if criteria.postcode:
            params["postcode"] = criteria.postcode
        elif criteria.city:
            params["area"] = criteria.city
        else:
            raise ValueError("listing feed needs a postcode or a city")

        results: list[NormalizedListing] = []
        for page_number in range(1, self._max_pages + 1):
            data = self._client.get_json(LISTINGS_PATH, {**params, "page_number": page_number})
            if data is None:
                break
            if not isinstance(data, dict):
                raise MalformedUpstreamData("listing feed page is not an object")

            items = data.get("listing") or []
            if not isinstance(items, list):
                raise MalformedUpstreamData("listing feed 'listing' is not a list")

            for item in items:
                listing = self._normalise_item(item)
                if listing is not None:
                    results.append(listing)
                if criteria.max_items is not None and len(results) >= criteria.max_items:
                    return results

            result_count = data.get("result_count")
            if len(items) < self._page_size:
                break
            if isinstance(result_count, int) and page_number * self._page_size >= result_count:
                break

        logger.info(
            "%s: %d listing(s) for %s", self.registration.source_id, len(results), criteria.label
        )
        return results

    def _normalise_item(self, item: Any) -> Optional[NormalizedListing]:
        if not isinstance(item, dict):
            return self.normaliser.normalise(item, "unknown")
        listing_id = item.get("listing_id")
        source_listing_id = f"zoopla-{listing_id}" if listing_id else ""
        try:
            canonical = self.to_canonical(item)
        except (AttributeError, TypeError, ValueError) as e:
            logger.debug("Unreadable feed item %s: %s", source_listing_id, e)
            self.normaliser.reject(source_listing_id or "unknown", "MALFORMED_ITEM", item)
            return None
        return self.normaliser.normalise(canonical, source_listing_id)

    @staticmethod
    def to_canonical(item: dict) -> dict[str, Any]:
        """Map feed keys onto the normaliser's canonical keys."""
        is_rental = item.get("listing_status") == "rent"

        display = str(item.get("displayable_address") or "").strip()
        number = str(item.get("property_number") or "").strip()
        if number and not display.startswith(number):
            address = f"{number} {display}".strip()
        else:
            address = display

        outcode = str(item.get("outcode") or "").strip()
        incode = str(item.get("incode") or "").strip()
        postcode = f"{outcode} {incode}".strip() if incode else item.get("postcode", "")

        if is_rental:
            rental_prices = item.get("rental_prices") or {}
            price = rental_prices.get("per_month") if isinstance(rental_prices, dict) else None
            price = price or item.get("price")
        else:
            price = item.get("price")

        return {
            "address": address,
            "postcode": postcode,
            "city": item.get("post_town") or item.get("county"),
            "latitude": item.get("latitude"),
            "longitude": item.get("longitude"),
            "listing_type": "rent" if is_rental else "sale",
            "price": price,
            "bedrooms": item.get("num_bedrooms"),
            "bathrooms": item.get("num_bathrooms"),
            "property_type": item.get("property_type"),
            "title": item.get("title") or display,
            "url": item.get("details_url"),
            "uprn": item.get("uprn"),
        }
