"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from typing import Iterable, Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# Stage / adapter name -> Config attributes it cannot run without
REQUIRED_CREDENTIALS = {
    "listing_feed": ("listing_feed_api_key",),
    "hmo_register": ("propertydata_api_key",),
    "epc": ("epc_api_email", "epc_api_key"),
    "broadband": ("ofcom_api_key",),
    "planning_constraints": ("searchland_api_key",),
}

_SECRET_FIELDS = frozenset(
    {
        "epc_api_email",
        "epc_api_key",
        "listing_feed_api_key",
        "propertydata_api_key",
        "ofcom_api_key",
        "searchland_api_key",
    }
)


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Credentials
    epc_api_email: Optional[str] = field(default_factory=lambda: os.getenv("EPC_API_EMAIL"))
    epc_api_key: Optional[str] = field(default_factory=lambda: os.getenv("EPC_API_KEY"))
    listing_feed_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("LISTING_FEED_API_KEY")
    )
    propertydata_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("PROPERTYDATA_API_KEY")
    )
    ofcom_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OFCOM_API_KEY"))
    searchland_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("SEARCHLAND_API_KEY")
    )

    # Endpoints
    epc_base_url: str = field(
        default_factory=lambda: os.getenv(
            "EPC_BASE_URL", "https://epc.opendatacommunities.org/api/v1"
        )
    )
    listing_feed_base_url: str = field(
        default_factory=lambda: os.getenv("LISTING_FEED_BASE_URL", "https://api.zoopla.co.uk/api/v1")
    )
    propertydata_base_url: str = field(
        default_factory=lambda: os.getenv("PROPERTYDATA_BASE_URL", "https://api.propertydata.co.uk")
    )
    ofcom_base_url: str = field(
        default_factory=lambda: os.getenv(
            "OFCOM_BASE_URL", "https://api-proxy.ofcom.org.uk/broadband/coverage"
        )
    )
    searchland_base_url: str = field(
        default_factory=lambda: os.getenv("SEARCHLAND_BASE_URL", "https://api.searchland.co.uk/v1")
    )
    nominatim_url: str = field(
        default_factory=lambda: os.getenv(
            "NOMINATIM_URL", "https://nominatim.openstreetmap.org/search"
        )
    )
    postcodes_io_url: str = field(
        default_factory=lambda: os.getenv("POSTCODES_IO_URL", "https://api.postcodes.io")
    )
    planning_polygons_path: Optional[str] = field(
        default_factory=lambda: os.getenv("PLANNING_POLYGONS_PATH")
    )

    # Operational
    request_timeout: int = field(default_factory=lambda: _env_int("REQUEST_TIMEOUT", "30"))
    max_workers: int = field(default_factory=lambda: _env_int("MAX_WORKERS", "4"))
    stale_after_days: int = field(default_factory=lambda: _env_int("STALE_AFTER_DAYS", "7"))
    max_run_errors: int = field(default_factory=lambda: _env_int("MAX_RUN_ERRORS", "50"))
    nominatim_delay_seconds: float = field(
        default_factory=lambda: _env_float("NOMINATIM_DELAY_SECONDS", "1.1")
    )
    postcodes_io_delay_seconds: float = field(
        default_factory=lambda: _env_float("POSTCODES_IO_DELAY_SECONDS", "0.1")
    )

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))
    repository_path: Optional[str] = field(default_factory=lambda: os.getenv("REPOSITORY_PATH"))

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    @property
    def repository_file(self) -> str:
        return self.repository_path or os.path.join(self.data_dir, "properties.json")

    def has_credentials(self, stage: str) -> bool:
        return not self.missing_credentials([stage])

    def missing_credentials(self, stages: Iterable[str]) -> list[str]:
        """
        Environment variable names missing for the given stages/adapters.

        Stages with no credential requirement are ignored.
        """
        missing = []
        for stage in stages:
            for attr in REQUIRED_CREDENTIALS.get(stage, ()):
                if not getattr(self, attr):
                    env_name = attr.upper()
                    if env_name not in missing:
                        missing.append(env_name)
        return missing

    def to_dict(self) -> dict:
        """Convert config to dictionary, with secrets masked."""
        data = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if name in _SECRET_FIELDS:
                value = "***" if value else None
            data[name] = value
        return data
