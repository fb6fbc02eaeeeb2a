"""Database query functions for the map API.

Executes parameterized queries against the DuckDB incident warehouse:
per-cell and per-grid-point incident counts for choropleth aggregation,
offense/law-class breakdowns for the filter UI, and totals, monthly
series and breakdowns for the statistics panels.
"""

import re
from datetime import date, datetime, time
from typing import Any

import duckdb
from pydantic import BaseModel, Field

from gothameye.data_access import EVENTS_TABLE

# H3 cell ID pattern: 15 hex characters
H3_CELL_PATTERN = re.compile(r"^[0-9a-fA-F]{15}$")

# Decimal places for the lat/lon grid fallback (~11 m)
GRID_PRECISION = 4


def is_valid_h3_cell(h3_cell: str) -> bool:
    """Check if string is a valid H3 cell ID format."""
    return bool(H3_CELL_PATTERN.match(h3_cell))


class EventQuery(BaseModel):
    """Date range and filters shared by the warehouse queries."""

    city: str
    start_date: date
    end_date: date
    offenses: list[str] = Field(default_factory=list)
    law_classes: list[str] = Field(default_factory=list)
    show_no_results: bool = Field(
        default=False, description="Force an empty result (all filters cleared)"
    )

    def cache_key(self) -> str:
        """Stable key for response caching."""
        return ":".join(
            [
                self.city,
                self.start_date.isoformat(),
                self.end_date.isoformat(),
                ",".join(sorted(self.offenses)),
                ",".join(sorted(self.law_classes)),
                str(self.show_no_results),
            ]
        )


def build_where_clause(query: EventQuery) -> tuple[str, list[Any]]:
    """Build WHERE conditions and parameters for an event query.

    The date range is inclusive of both days. Law class filters only apply to
    nyc, the only city whose feed carries a law class.

    Returns:
        Tuple of (where clause without the WHERE keyword, parameters)

    Raises:
        ValueError: If end_date is before start_date
    """
    if query.end_date < query.start_date:
        raise ValueError("end_date must not be before start_date")

    conditions = [
        "city = ?",
        "occurred_at >= ?",
        "occurred_at <= ?",
        "lat IS NOT NULL",
        "lon IS NOT NULL",
    ]
    params: list[Any] = [
        query.city,
        datetime.combine(query.start_date, time.min),
        datetime.combine(query.end_date, time(23, 59, 59)),
    ]

    if query.show_no_results:
        conditions.append("1 = 0")
    elif query.offenses:
        placeholders = ", ".join("?" * len(query.offenses))
        conditions.append(f"offense IN ({placeholders})")
        params.extend(query.offenses)

    if query.law_classes and query.city == "nyc":
        placeholders = ", ".join("?" * len(query.law_classes))
        conditions.append(f"law_class IN ({placeholders})")
        params.extend(query.law_classes)

    return " AND ".join(conditions), params


def query_cell_counts(
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    resolution: int,
    limit: int = 10000,
) -> list[tuple[str, int]]:
    """Count matching incidents per H3 cell (requires the h3 extension).

    Returns:
        List of (h3_cell, count), largest counts first
    """
    where_clause, params = build_where_clause(query)
    sql = f"""
        SELECT
            h3_latlng_to_cell_string(lat, lon, {int(resolution)}) AS h3_cell,
            COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause}
        GROUP BY h3_cell
        ORDER BY count DESC, h3_cell
        LIMIT ?
    """
    rows = conn.execute(sql, [*params, limit]).fetchall()
    return [(row[0], int(row[1])) for row in rows if row[0]]


def query_grid_counts(
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    limit: int = 5000,
) -> list[tuple[float, float, int]]:
    """Count matching incidents per rounded lat/lon grid point.

    Returns:
        List of (lat, lon, count), largest counts first
    """
    where_clause, params = build_where_clause(query)
    sql = f"""
        SELECT
            round(lat, {GRID_PRECISION}) AS lat_grid,
            round(lon, {GRID_PRECISION}) AS lon_grid,
            COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause}
        GROUP BY lat_grid, lon_grid
        ORDER BY count DESC, lat_grid, lon_grid
        LIMIT ?
    """
    rows = conn.execute(sql, [*params, limit]).fetchall()
    return [(float(row[0]), float(row[1]), int(row[2])) for row in rows]


def query_offense_breakdown(
    conn: duckdb.DuckDBPyConnection, query: EventQuery, limit: int | None = None
) -> list[dict[str, Any]]:
    """Matching incidents per offense, largest first."""
    where_clause, params = build_where_clause(query)
    sql = f"""
        SELECT offense, COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause} AND offense IS NOT NULL AND offense != ''
        GROUP BY offense
        ORDER BY count DESC, offense
    """
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(sql, params).fetchall()
    return [{"offense": row[0], "count": int(row[1])} for row in rows]


def query_law_class_breakdown(
    conn: duckdb.DuckDBPyConnection, query: EventQuery, limit: int | None = None
) -> list[dict[str, Any]]:
    """Matching incidents per law class (nyc only; empty elsewhere)."""
    if query.city != "nyc":
        return []
    where_clause, params = build_where_clause(query)
    sql = f"""
        SELECT law_class, COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause} AND law_class IS NOT NULL AND law_class != ''
        GROUP BY law_class
        ORDER BY count DESC, law_class
    """
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(sql, params).fetchall()
    return [{"law_class": row[0], "count": int(row[1])} for row in rows]


def query_total_count(conn: duckdb.DuckDBPyConnection, query: EventQuery) -> int:
    """Number of matching incidents."""
    where_clause, params = build_where_clause(query)
    result = conn.execute(
        f"SELECT COUNT(*) FROM {EVENTS_TABLE} WHERE {where_clause}", params
    ).fetchone()
    return int(result[0]) if result else 0


def query_time_series(conn: duckdb.DuckDBPyConnection, query: EventQuery) -> list[dict[str, Any]]:
    """Matching incidents per calendar month (YYYY-MM), oldest first."""
    where_clause, params = build_where_clause(query)
    rows = conn.execute(
        f"""
        SELECT strftime(occurred_at, '%Y-%m') AS month, COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause}
        GROUP BY month
        ORDER BY month
        """,
        params,
    ).fetchall()
    return [{"month": row[0], "count": int(row[1])} for row in rows]


def query_grid_breakdown(
    conn: duckdb.DuckDBPyConnection, query: EventQuery
) -> list[tuple[float, float, str, str | None, str | None, int]]:
    """Matching incidents per grid point, month, offense and law class.

    Used when statistics are restricted to one neighborhood: each grid point
    is resolved to a region and only rows inside the neighborhood are kept.

    Returns:
        List of (lat, lon, month, offense, law_class, count)
    """
    where_clause, params = build_where_clause(query)
    rows = conn.execute(
        f"""
        SELECT
            round(lat, {GRID_PRECISION}) AS lat_grid,
            round(lon, {GRID_PRECISION}) AS lon_grid,
            strftime(occurred_at, '%Y-%m') AS month,
            offense,
            law_class,
            COUNT(*) AS count
        FROM {EVENTS_TABLE}
        WHERE {where_clause}
        GROUP BY ALL
        ORDER BY lat_grid, lon_grid, month
        """,
        params,
    ).fetchall()
    return [
        (float(row[0]), float(row[1]), row[2], row[3], row[4], int(row[5])) for row in rows
    ]


def get_offense_counts(
    conn: duckdb.DuckDBPyConnection, city: str, start_date: date, end_date: date
) -> list[dict[str, Any]]:
    """Offense names with incident counts for a city and date range."""
    query = EventQuery(city=city, start_date=start_date, end_date=end_date)
    return query_offense_breakdown(conn, query)


def get_law_class_counts(
    conn: duckdb.DuckDBPyConnection, city: str, start_date: date, end_date: date
) -> list[dict[str, Any]]:
    """Law classes with incident counts (nyc only; empty elsewhere)."""
    query = EventQuery(city=city, start_date=start_date, end_date=end_date)
    return query_law_class_breakdown(conn, query)
