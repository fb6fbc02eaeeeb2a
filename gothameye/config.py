"""Configuration management with Pydantic validation."""

import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

# Cities with boundary data and incident feeds
SUPPORTED_CITIES: tuple[str, ...] = ("nyc", "sf")


class CityConfig(BaseModel):
    """Boundary source and property probing order for one city."""

    display_name: str = Field(description="Human readable city name")
    boundaries: Path = Field(description="GeoJSON FeatureCollection, relative to data_dir")
    id_fields: list[str] = Field(description="Candidate property names for region id")
    name_fields: list[str] = Field(description="Candidate property names for region name")

    @field_validator("id_fields")
    @classmethod
    def validate_id_fields(cls, v: list[str]) -> list[str]:
        """Require at least one candidate id property."""
        if not v:
            raise ValueError("id_fields must name at least one property")
        return v


def _default_cities() -> dict[str, CityConfig]:
    return {
        "nyc": CityConfig(
            display_name="New York City",
            boundaries=Path("boundaries/nyc_nta_2020.geojson"),
            id_fields=["NTA2020", "nta2020", "ntacode", "id", "name"],
            name_fields=["NTAName", "ntaname", "name"],
        ),
        "sf": CityConfig(
            display_name="San Francisco",
            boundaries=Path("boundaries/sf_nta_2025.geojson"),
            id_fields=["name", "nhood", "id"],
            name_fields=["name", "nhood"],
        ),
    }


class SpatialConfig(BaseModel):
    """Configuration for the H3 neighborhood index."""

    resolution: int = Field(default=9)
    build_on_startup: bool = Field(default=True)

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: int) -> int:
        """Ensure resolution is a valid H3 value."""
        if not 0 <= v <= 15:
            raise ValueError("Resolution must be between 0 and 15")
        return v


class DuckDBConfig(BaseModel):
    """Configuration for DuckDB execution."""

    memory_limit: str = Field(default="4GB")
    threads: int = Field(default=2)
    temp_directory: str = Field(default="/tmp/duckdb")
    max_temp_directory_size: str = Field(default="50GB")


class ApiConfig(BaseModel):
    """Configuration for the HTTP layer."""

    events_file: Path = Field(default=Path("crime_events.parquet"))
    cache_ttl_seconds: int = Field(default=300)
    cache_max_entries: int = Field(default=256)
    max_cells: int = Field(default=10000)


class Config(BaseModel):
    """Main configuration."""

    data_dir: Path = Field(default=Path("data"))
    spatial: SpatialConfig = Field(default_factory=SpatialConfig)
    cities: dict[str, CityConfig] = Field(default_factory=_default_cities)
    duckdb: DuckDBConfig = Field(default_factory=DuckDBConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("cities")
    @classmethod
    def validate_cities(cls, v: dict[str, CityConfig]) -> dict[str, CityConfig]:
        """Only the supported cities can be configured."""
        unknown = sorted(set(v) - set(SUPPORTED_CITIES))
        if unknown:
            raise ValueError(f"Unsupported cities: {', '.join(unknown)}")
        return v

    def boundaries_path(self, city: str) -> Path:
        """Resolve a city's boundary file against data_dir."""
        path = self.cities[city].boundaries
        if path.is_absolute():
            return path
        return self.data_dir / path

    @classmethod
    def from_file(cls, path: Path | str) -> "Config":
        """Load configuration from TOML file.

        Args:
            path: Path to config.toml file

        Returns:
            Validated Config object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config validation fails
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls(**data)
