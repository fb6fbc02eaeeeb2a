"""Index lifecycle: one-time construction, rebuilds, readiness and stats.

The service owns one swappable reference per city to an immutable CityIndex.
Readers take the current reference without locking; a build installs a new
index by replacing the reference. Concurrent build requests for the same city
share one in-progress build and all receive its result or its exception.

States per city::

    unbuilt -> building -> ready
    ready -> building (rebuild) -> ready

A failed first build returns the city to unbuilt. A failed rebuild leaves the
previous index serving. Nothing is retried automatically.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from enum import StrEnum
from typing import Any

from gothameye.config import Config
from gothameye.spatial.catalog import Region
from gothameye.spatial.errors import UnconfiguredCityError
from gothameye.spatial.index import CityIndex, build_city_index
from gothameye.spatial.resolver import (
    BatchLookupResult,
    BatchPoint,
    LookupReason,
    LookupResult,
    resolve_batch,
    resolve_point,
)

logger = logging.getLogger(__name__)

# Rough size of one cell entry (string key + region id reference)
AVG_BYTES_PER_CELL = 50


class IndexState(StrEnum):
    """Lifecycle state of one city's index."""

    UNBUILT = "unbuilt"
    BUILDING = "building"
    READY = "ready"


class SpatialService:
    """Process-wide owner of the per-city spatial indexes."""

    def __init__(
        self,
        config: Config,
        builder: Callable[[str, Config], CityIndex] = build_city_index,
    ) -> None:
        self.config = config
        self._builder = builder
        self._lock = threading.Lock()
        self._indexes: dict[str, CityIndex] = {}
        self._builds: dict[str, Future[CityIndex]] = {}
        self._generations: dict[str, int] = {}

    @property
    def cities(self) -> list[str]:
        return list(self.config.cities)

    def _check_city(self, city: str) -> None:
        if city not in self.config.cities:
            raise UnconfiguredCityError(f"No spatial configuration for city: {city}")

    def state(self, city: str) -> IndexState:
        """Non-blocking lifecycle state of a city."""
        self._check_city(city)
        if city in self._builds:
            return IndexState.BUILDING
        if city in self._indexes:
            return IndexState.READY
        return IndexState.UNBUILT

    def is_ready(self, city: str | None = None) -> bool:
        """Whether a city (or every configured city) has a usable index."""
        if city is not None:
            return city in self._indexes
        return all(c in self._indexes for c in self.config.cities)

    def get_index(self, city: str) -> CityIndex | None:
        """Current snapshot for a city, or None if not built."""
        return self._indexes.get(city)

    def generation(self, city: str) -> int:
        """Number of indexes installed for a city so far (0 before the first build)."""
        return self._generations.get(city, 0)

    def _build(self, city: str, force: bool) -> CityIndex:
        owner = False
        with self._lock:
            existing = self._indexes.get(city)
            if existing is not None and not force:
                return existing
            future = self._builds.get(city)
            if future is None:
                future = Future()
                self._builds[city] = future
                owner = True

        if not owner:
            logger.debug(f"Waiting for in-progress {city} index build")
            return future.result()

        logger.info(f"Building spatial index for {city}...")
        try:
            index = self._builder(city, self.config)
        except BaseException as e:
            with self._lock:
                del self._builds[city]
            if city in self._indexes:
                logger.error(f"Rebuild of {city} index failed, previous index kept: {e}")
            else:
                logger.error(f"Build of {city} index failed: {e}")
            future.set_exception(e)
            raise

        with self._lock:
            self._indexes[city] = index
            self._generations[city] = self._generations.get(city, 0) + 1
            del self._builds[city]
        future.set_result(index)
        return index

    def ensure_ready(self, city: str | None = None) -> None:
        """Build missing indexes and block until they are ready.

        Idempotent. With no city, every configured city is built.

        Raises:
            UnconfiguredCityError: If the city is not configured
            MissingResourceError: If a boundary file can't be read
        """
        cities = self.cities if city is None else [city]
        for c in cities:
            self._check_city(c)
            self._build(c, force=False)

    def rebuild(self, city: str) -> CityIndex:
        """Build a fresh index and swap it in.

        Readers holding the previous snapshot are unaffected. If a build is
        already running, waits for it instead of starting another.
        """
        self._check_city(city)
        return self._build(city, force=True)

    def lookup(self, city: str, lat: float, lon: float) -> LookupResult:
        """Resolve a point, building the city's index on first use.

        Returns a null result for unconfigured cities or invalid coordinates.
        """
        if city not in self.config.cities:
            logger.debug(f"Lookup for unconfigured city {city}")
            return LookupResult(reason=LookupReason.UNCONFIGURED_CITY)

        index = self._indexes.get(city)
        if index is None:
            logger.info(f"Spatial index for {city} not ready, building now")
            index = self._build(city, force=False)
        return resolve_point(index, lat, lon)

    def batch_lookup(self, city: str, points: Iterable[BatchPoint]) -> list[BatchLookupResult]:
        """Resolve many points against one snapshot, preserving order."""
        index = None
        if city in self.config.cities:
            index = self._indexes.get(city) or self._build(city, force=False)
        return resolve_batch(index, points)

    def regions(self, city: str) -> list[Region]:
        """All regions of a city in catalog order; empty if not configured."""
        if city not in self.config.cities:
            return []
        index = self._indexes.get(city) or self._build(city, force=False)
        return list(index.region_meta.values())

    def stats(self) -> dict[str, Any]:
        """Summary counters over the currently loaded indexes."""
        indexes = list(self._indexes.values())
        total_cells = sum(index.total_cells for index in indexes)
        memory_mb = total_cells * AVG_BYTES_PER_CELL / 1024 / 1024

        return {
            "total_cities": len(indexes),
            "cities_loaded": sorted(index.city for index in indexes),
            "total_regions": sum(index.total_regions for index in indexes),
            "total_cells": total_cells,
            "resolution": self.config.spatial.resolution,
            "memory_usage_estimate": f"{memory_mb:.2f} MB",
        }
