"""Tests for the choropleth, stats and filter endpoints."""

from collections.abc import Generator

import duckdb
import pytest
from cachetools import TTLCache
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gothameye.api import choropleth as choropleth_module
from gothameye.spatial.service import SpatialService

MARCH = {"city": "nyc", "from": "2024-03-01", "to": "2024-03-31"}


@pytest.fixture
def app_with_db(
    spatial_service: SpatialService,
    warehouse: duckdb.DuckDBPyConnection,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[FastAPI]:
    """Configure FastAPI app with the synthetic warehouse, restoring state after.

    Aggregation is pinned to the lat/lon grid so results don't depend on
    whether the h3 extension is installed.
    """
    from gothameye.api.main import app

    monkeypatch.setattr(choropleth_module, "has_h3_functions", lambda conn: False)

    original = {
        name: getattr(app.state, name, None) for name in ("spatial", "db", "cache", "config")
    }
    app.state.spatial = spatial_service
    app.state.db = warehouse
    app.state.cache = TTLCache(maxsize=16, ttl=300)
    app.state.config = spatial_service.config
    yield app
    for name, value in original.items():
        setattr(app.state, name, value)


@pytest.fixture
def client(app_with_db: FastAPI) -> TestClient:
    """Create test client."""
    return TestClient(app_with_db)


class TestChoropleth:
    """Tests for /api/choropleth."""

    def test_counts_and_scale(self, client: TestClient) -> None:
        """March incidents bucket into neighborhoods with a percentile scale."""
        response = client.get("/api/choropleth", params=MARCH)

        assert response.status_code == 200
        data = response.json()
        assert data["neighborhoods"] == [
            {"region_id": "MN0502", "count": 5},
            {"region_id": "MN0501", "count": 3},
            {"region_id": "BK0101", "count": 2},
        ]
        assert data["scale"] == {"min": 2, "max": 5, "p50": 3, "p90": 5, "p99": 5}
        assert data["strategy"] == "latlon_grid"
        assert data["unassigned"] == 1

    def test_cache_control_header(self, client: TestClient) -> None:
        """Responses are cacheable for five minutes."""
        response = client.get("/api/choropleth", params=MARCH)
        assert response.headers["cache-control"] == "public, max-age=300"

    def test_repeat_query_served_from_cache(
        self, client: TestClient, app_with_db: FastAPI
    ) -> None:
        """A second identical query doesn't touch the warehouse."""
        first = client.get("/api/choropleth", params=MARCH)
        assert len(app_with_db.state.cache) == 1

        # A closed warehouse would fail any query that reached it
        app_with_db.state.db.close()
        second = client.get("/api/choropleth", params=MARCH)

        assert second.status_code == 200
        assert second.json() == first.json()
        assert second.headers["cache-control"] == "public, max-age=300"

    def test_rebuild_invalidates_cached_choropleth(
        self, client: TestClient, app_with_db: FastAPI, spatial_service: SpatialService
    ) -> None:
        """A rebuild outside the HTTP endpoint still retires cached responses."""
        client.get("/api/choropleth", params=MARCH)
        spatial_service.rebuild("nyc")

        response = client.get("/api/choropleth", params=MARCH)

        assert response.status_code == 200
        assert len(app_with_db.state.cache) == 2

    def test_cache_created_from_config(
        self, client: TestClient, app_with_db: FastAPI, spatial_service: SpatialService
    ) -> None:
        """A missing response cache is created with the configured size and TTL."""
        app_with_db.state.cache = None
        spatial_service.config.api.cache_ttl_seconds = 42
        spatial_service.config.api.cache_max_entries = 7

        client.get("/api/choropleth", params=MARCH)

        cache = app_with_db.state.cache
        assert cache.ttl == 42
        assert cache.maxsize == 7
        assert len(cache) == 1

    def test_filter_order_shares_cache_entry(
        self, client: TestClient, app_with_db: FastAPI
    ) -> None:
        """Reordered filter lists map to the same cached response."""
        client.get("/api/choropleth", params={**MARCH, "offenses": ["ROBBERY", "ASSAULT"]})
        client.get("/api/choropleth", params={**MARCH, "offenses": ["ASSAULT", "ROBBERY"]})
        assert len(app_with_db.state.cache) == 1

    def test_offense_filter(self, client: TestClient) -> None:
        """Only the selected offenses are counted."""
        response = client.get("/api/choropleth", params={**MARCH, "offenses": "ROBBERY"})

        assert response.status_code == 200
        assert response.json()["neighborhoods"] == [{"region_id": "BK0101", "count": 1}]

    def test_law_class_filter(self, client: TestClient) -> None:
        """lawClass narrows nyc incidents."""
        response = client.get("/api/choropleth", params={**MARCH, "lawClass": "MISDEMEANOR"})

        assert response.status_code == 200
        assert response.json()["neighborhoods"] == [
            {"region_id": "MN0501", "count": 3},
            {"region_id": "BK0101", "count": 1},
        ]

    def test_show_no_results(self, client: TestClient) -> None:
        """Cleared filters return an empty map."""
        response = client.get("/api/choropleth", params={**MARCH, "showNoResults": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["neighborhoods"] == []
        assert data["scale"] == {"min": 0, "max": 0, "p50": 0, "p90": 0, "p99": 0}

    def test_sf(self, client: TestClient) -> None:
        """SF incidents land in SF neighborhoods."""
        response = client.get("/api/choropleth", params={**MARCH, "city": "sf"})

        assert response.status_code == 200
        assert [n["region_id"] for n in response.json()["neighborhoods"]] == [
            "Mission",
            "Tenderloin",
        ]

    def test_reversed_dates_return_400(self, client: TestClient) -> None:
        """'to' before 'from' is rejected."""
        response = client.get(
            "/api/choropleth", params={"city": "nyc", "from": "2024-03-31", "to": "2024-03-01"}
        )
        assert response.status_code == 400

    def test_unknown_city_returns_400(self, client: TestClient) -> None:
        """Unknown cities are rejected."""
        response = client.get("/api/choropleth", params={**MARCH, "city": "chi"})
        assert response.status_code == 400

    def test_missing_dates_return_422(self, client: TestClient) -> None:
        """from and to are required."""
        response = client.get("/api/choropleth", params={"city": "nyc"})
        assert response.status_code == 422

    def test_no_warehouse_returns_503(self, client: TestClient, app_with_db: FastAPI) -> None:
        """Without a warehouse the endpoint is unavailable."""
        app_with_db.state.db = None
        response = client.get("/api/choropleth", params=MARCH)
        assert response.status_code == 503


class TestFilters:
    """Tests for /api/filters."""

    def test_nyc_filters(self, client: TestClient) -> None:
        """Offenses and law classes with counts, largest first."""
        response = client.get("/api/filters", params=MARCH)

        assert response.status_code == 200
        data = response.json()
        assert data["offenses"][0] == {"offense": "ASSAULT", "count": 5}
        assert data["total_offenses"] == 4
        assert {"law_class": "FELONY", "count": 6} in data["law_classes"]

    def test_sf_has_no_law_classes(self, client: TestClient) -> None:
        """Law classes are nyc only."""
        response = client.get("/api/filters", params={**MARCH, "city": "sf"})

        assert response.status_code == 200
        data = response.json()
        assert data["law_classes"] == []
        assert {o["offense"] for o in data["offenses"]} == {"Larceny Theft", "Burglary"}


class TestStats:
    """Tests for /api/stats."""

    def test_city_wide_stats(self, client: TestClient) -> None:
        """Totals, monthly series and breakdowns for all of nyc."""
        response = client.get("/api/stats", params=MARCH)

        assert response.status_code == 200
        data = response.json()
        assert data["totals"] == {"events": 11}
        assert data["time_series"] == [{"month": "2024-03", "count": 11}]
        assert data["by_offense"] == [
            {"offense": "ASSAULT", "count": 5},
            {"offense": "PETIT LARCENY", "count": 4},
            {"offense": "HARASSMENT", "count": 1},
            {"offense": "ROBBERY", "count": 1},
        ]
        assert data["by_law_class"] == [
            {"law_class": "FELONY", "count": 6},
            {"law_class": "MISDEMEANOR", "count": 4},
            {"law_class": "VIOLATION", "count": 1},
        ]
        assert [(n["region_id"], n["count"]) for n in data["by_location"]] == [
            ("MN0502", 5),
            ("MN0501", 3),
            ("BK0101", 2),
        ]
        assert data["by_location"][0]["region_name"] == "Midtown-Times Square"
        assert data["selected_neighborhood"] is None

    def test_selected_neighborhood(self, client: TestClient) -> None:
        """selectedNeighborhood restricts every panel to incidents inside it."""
        response = client.get("/api/stats", params={**MARCH, "selectedNeighborhood": "BK0101"})

        assert response.status_code == 200
        data = response.json()
        assert data["totals"] == {"events": 2}
        assert data["time_series"] == [{"month": "2024-03", "count": 2}]
        assert data["by_offense"] == [
            {"offense": "PETIT LARCENY", "count": 1},
            {"offense": "ROBBERY", "count": 1},
        ]
        assert data["by_law_class"] == [
            {"law_class": "FELONY", "count": 1},
            {"law_class": "MISDEMEANOR", "count": 1},
        ]
        assert data["by_location"] == [
            {"region_id": "BK0101", "region_name": "Greenpoint", "count": 2}
        ]
        assert data["selected_neighborhood"] == "BK0101"

    def test_unknown_neighborhood_is_empty(self, client: TestClient) -> None:
        """A region id the index doesn't know matches nothing."""
        response = client.get("/api/stats", params={**MARCH, "selectedNeighborhood": "XX9999"})

        assert response.status_code == 200
        data = response.json()
        assert data["totals"] == {"events": 0}
        assert data["time_series"] == []
        assert data["by_offense"] == []
        assert data["by_location"] == []

    def test_series_spans_months(self, client: TestClient) -> None:
        """Each calendar month in range gets its own point, oldest first."""
        response = client.get(
            "/api/stats", params={"city": "nyc", "from": "2023-12-01", "to": "2024-03-31"}
        )

        data = response.json()
        assert data["totals"] == {"events": 12}
        assert data["time_series"] == [
            {"month": "2023-12", "count": 1},
            {"month": "2024-03", "count": 11},
        ]

    def test_filters_apply(self, client: TestClient) -> None:
        """Offense filters narrow totals and breakdowns."""
        response = client.get("/api/stats", params={**MARCH, "offenses": "ASSAULT"})

        data = response.json()
        assert data["totals"] == {"events": 5}
        assert data["by_law_class"] == [{"law_class": "FELONY", "count": 5}]
        assert [n["region_id"] for n in data["by_location"]] == ["MN0502"]

    def test_sf_has_no_law_classes(self, client: TestClient) -> None:
        """Law class breakdowns are nyc only."""
        response = client.get("/api/stats", params={**MARCH, "city": "sf"})

        data = response.json()
        assert data["totals"] == {"events": 5}
        assert data["by_law_class"] == []
        assert data["by_offense"][0] == {"offense": "Larceny Theft", "count": 4}

    def test_cached_per_neighborhood(self, client: TestClient, app_with_db: FastAPI) -> None:
        """City-wide and per-neighborhood stats are cached separately."""
        client.get("/api/stats", params=MARCH)
        client.get("/api/stats", params={**MARCH, "selectedNeighborhood": "BK0101"})
        assert len(app_with_db.state.cache) == 2

        app_with_db.state.db.close()
        response = client.get("/api/stats", params=MARCH)
        assert response.status_code == 200
        assert response.json()["totals"] == {"events": 11}
        assert response.headers["cache-control"] == "public, max-age=300"

    def test_reversed_dates_return_400(self, client: TestClient) -> None:
        """'to' before 'from' is rejected."""
        response = client.get(
            "/api/stats", params={"city": "nyc", "from": "2024-03-31", "to": "2024-03-01"}
        )
        assert response.status_code == 400

    def test_unknown_city_returns_400(self, client: TestClient) -> None:
        """Unknown cities are rejected."""
        response = client.get("/api/stats", params={**MARCH, "city": "chi"})
        assert response.status_code == 400

    def test_no_warehouse_returns_503(self, client: TestClient, app_with_db: FastAPI) -> None:
        """Without a warehouse the endpoint is unavailable."""
        app_with_db.state.db = None
        response = client.get("/api/stats", params=MARCH)
        assert response.status_code == 503
