"""
External provider adapters.

Available adapters:
- ListingFeedAdapter: Paginated rental/sale listings feed
- HmoRegisterAdapter: National HMO licence register
- EpcRegisterClient: EPC open data register (strict address matching)
- NominatimProvider / PostcodesIoProvider: Geocoding tiers
- BroadbandClient: Ofcom coverage by postcode
- PlanningConstraintsClient / load_polygons: Planning data
"""

from .http import JsonClient, RateLimiter, build_session
from .listing_feed import ListingFeedAdapter
from .hmo_register import HmoRegisterAdapter
from .epc_register import EpcCertificate, EpcRegisterClient
from .geocoders import NominatimProvider, PostcodesIoProvider
from .broadband import BroadbandClient, BroadbandCoverage, select_premises
from .planning_data import PlanningConstraintsClient, load_polygons
from .factory import build_context

__all__ = [
    "JsonClient",
    "RateLimiter",
    "build_session",
    "ListingFeedAdapter",
    "HmoRegisterAdapter",
    "EpcCertificate",
    "EpcRegisterClient",
    "NominatimProvider",
    "PostcodesIoProvider",
    "BroadbandClient",
    "BroadbandCoverage",
    "select_premises",
    "PlanningConstraintsClient",
    "load_polygons",
    "build_context",
]
