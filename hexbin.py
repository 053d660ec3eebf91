"""
H3 hex-binning for the dashboard grid layer
"""
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import h3

DEFAULT_RESOLUTION = 9
FALLBACK_RESOLUTION = 7  # country

COLOR_RAMP = (
    (0.8, "#800026"),
    (0.6, "#BD0026"),
    (0.4, "#E31A1C"),
    (0.2, "#FC4E2A"),
)
LOW_DENSITY_COLOR = "#FFEDA0"


def resolution_for_zoom(zoom: float) -> int:
    if zoom > 14:
        return 10  # street detail
    if zoom >= 12:
        return 9  # city
    if zoom >= 10:
        return 8  # region
    return FALLBACK_RESOLUTION


def density_color(density: float) -> str:
    for threshold, color in COLOR_RAMP:
        if density > threshold:
            return color
    return LOW_DENSITY_COLOR


def fill_opacity(density: float) -> float:
    return round(0.6 + density * 0.3, 4)


def marker_points(markers: Iterable[Dict]) -> List[Tuple[float, float]]:
    return [(float(m["latitude"]), float(m["longitude"])) for m in markers]


def bin_points(points: Iterable[Sequence[float]], resolution: int = DEFAULT_RESOLUTION) -> List[Dict]:
    """Count points per H3 cell and normalize by the busiest cell."""
    counts = Counter(h3.latlng_to_cell(lat, lng, resolution) for lat, lng in points)
    if not counts:
        return []
    max_count = max(counts.values())
    return [
        {"cell": cell, "count": count, "density": count / max_count}
        for cell, count in counts.items()
    ]


def cell_polygon(cell: str) -> List[List[float]]:
    """Closed GeoJSON ring ([lng, lat] order) for an H3 cell."""
    boundary = h3.cell_to_boundary(cell)
    ring = [[lng, lat] for lat, lng in boundary]
    ring.append(ring[0])
    return ring


def hex_features(
    points: Iterable[Sequence[float]],
    resolution: Optional[int] = None,
    zoom: Optional[float] = None,
) -> Dict:
    """GeoJSON FeatureCollection, one polygon per non-empty cell.

    An explicit resolution wins; otherwise it follows the map zoom, and
    falls back to DEFAULT_RESOLUTION.
    """
    if resolution is None:
        resolution = resolution_for_zoom(zoom) if zoom is not None else DEFAULT_RESOLUTION

    features = []
    for cell in bin_points(points, resolution):
        density = cell["density"]
        features.append({
            "type": "Feature",
            "id": cell["cell"],
            "properties": {
                "cell": cell["cell"],
                "count": cell["count"],
                "density": density,
                "fill_color": density_color(density),
                "fill_opacity": fill_opacity(density),
            },
            "geometry": {"type": "Polygon", "coordinates": [cell_polygon(cell["cell"])]},
        })
    return {"type": "FeatureCollection", "resolution": resolution, "features": features}
