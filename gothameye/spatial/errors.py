"""Exceptions raised by the spatial indexing subsystem."""


class SpatialError(Exception):
    """Base class for spatial index errors."""

    pass


class MissingResourceError(SpatialError):
    """Boundary file is absent, unreadable or not a FeatureCollection.

    Fatal to the build of the affected city.
    """

    pass


class MalformedFeatureError(SpatialError):
    """A boundary feature has no usable region id or no geometry.

    Recovered locally: the feature is skipped and the build continues.
    """

    pass


class UnsupportedGeometryError(MalformedFeatureError):
    """A boundary feature has a geometry other than Polygon/MultiPolygon."""

    pass


class UnconfiguredCityError(SpatialError):
    """City has no boundary configuration."""

    pass
