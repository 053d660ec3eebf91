"""
Heatmap layer input for leaflet.heat
"""
from typing import Dict, Iterable, List

HEAT_RADIUS = 25
HEAT_BLUR = 15
HEAT_MAX_ZOOM = 17
HEAT_GRADIENT = {
    0.4: "blue",
    0.6: "cyan",
    0.7: "lime",
    0.8: "yellow",
    1.0: "red",
}


def heat_points(markers: Iterable[Dict], weight: float = 1.0) -> List[List[float]]:
    """[lat, lng, intensity] triples; every submission counts the same."""
    return [[float(m["latitude"]), float(m["longitude"]), weight] for m in markers]


def heat_options() -> Dict:
    # JSON object keys must be strings
    return {
        "radius": HEAT_RADIUS,
        "blur": HEAT_BLUR,
        "maxZoom": HEAT_MAX_ZOOM,
        "gradient": {str(stop): color for stop, color in HEAT_GRADIENT.items()},
    }


def heat_layer(markers: Iterable[Dict]) -> Dict:
    return {"points": heat_points(markers), "options": heat_options()}
