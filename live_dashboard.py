#!/usr/bin/env python3
"""
GeoPulse Live Dashboard - polls the marker API and reports KPIs and new submissions
"""
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from aggregation import summarize, tag_sources
from api_client import ApiError, MarkerApiClient
from config import ConfigError, load_config
from diff_tracker import NEW_MARKER_SECONDS, NewItemTracker
from heatmap import heat_layer
from hexbin import hex_features, marker_points
from submission import Notifier, log_notifier

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5.0


class LiveDashboard:
    """Owns the dashboard's working set of markers.

    A manual pull forgets which ids were seen, so nothing it returns is
    flagged new; polls flag ids that were not seen before.
    """

    def __init__(
        self,
        client: MarkerApiClient,
        version: Optional[int] = None,
        compare_versions: Optional[Tuple[int, int]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        tracker: Optional[NewItemTracker] = None,
        notify: Notifier = log_notifier,
        on_refresh: Optional[Callable[[List[Dict], List[Dict]], None]] = None,
    ):
        self.client = client
        self.version = version
        self.compare_versions = compare_versions
        self.poll_interval = float(poll_interval)
        self.tracker = tracker or NewItemTracker(NEW_MARKER_SECONDS)
        self.notify = notify
        self.on_refresh = on_refresh
        self.lock = threading.Lock()
        self.markers: List[Dict] = []
        self.is_pulling = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def compare_mode(self) -> bool:
        return self.compare_versions is not None

    @property
    def is_live(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _fetch_all(self) -> List[Dict]:
        if self.compare_mode:
            version_a, version_b = self.compare_versions
            # Either fetch failing fails the whole refresh
            return tag_sources(self.client.get_markers(version_a), self.client.get_markers(version_b))
        return self.client.get_markers(self.version)

    def fetch(self, polling: bool = False) -> List[Dict]:
        """Refresh the working set. Returns the markers flagged new by this fetch."""
        if not polling:
            self.is_pulling = True
        try:
            fetched = self._fetch_all()
        except ApiError as e:
            logger.error(f"Error fetching markers: {e}")
            if not polling:
                self.notify("error", "Failed to load data")
            return []
        finally:
            if not polling:
                self.is_pulling = False

        with self.lock:
            self.markers = self.tracker.expire(self.markers)
            merged = self.tracker.merge(fetched, self.markers, polling=polling)
            previously_new = {m.get("id") for m in self.markers if m.get("is_new")}
            self.markers = merged
        arrived = [m for m in merged if m.get("is_new") and m.get("id") not in previously_new]

        if self.on_refresh:
            self.on_refresh(merged, arrived)
        return arrived

    def pull(self) -> List[Dict]:
        """Manual refresh."""
        self.tracker.reset()
        return self.fetch(polling=False)

    def poll_once(self) -> List[Dict]:
        return self.fetch(polling=True)

    def current_markers(self) -> List[Dict]:
        with self.lock:
            self.markers = self.tracker.expire(self.markers)
            return list(self.markers)

    def view(self, time_range: str = "all", sentiment: str = "all", source: Optional[str] = None,
             zoom: Optional[float] = None, now: Optional[datetime] = None) -> Dict:
        """Filtered markers, KPIs and both visualization layers."""
        summary = summarize(
            self.current_markers(),
            time_range=time_range,
            sentiment=sentiment,
            # Only compare fetches are tagged with a source
            source=source if self.compare_mode else None,
            compare=self.compare_mode,
            now=now,
        )
        filtered = summary["markers"]
        summary["hexbins"] = hex_features(marker_points(filtered), zoom=zoom)
        summary["heatmap"] = heat_layer(filtered)
        return summary

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Polling cycle failed: {e}")

    def start(self) -> None:
        """Go live: poll every poll_interval seconds on a background thread."""
        if self.is_live:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="live-dashboard", daemon=True)
        self._thread.start()
        logger.info(f"Live polling every {self.poll_interval:g}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.poll_interval + 1)
        self._thread = None


def format_kpis(kpis: Dict) -> str:
    if "A" in kpis:
        return " | ".join(
            f"{source}: {values['total']} points, {values['positivity']}% safe"
            for source, values in kpis.items()
        )
    return f"{kpis['total']} points, {kpis['positivity']}% safe, {kpis['velocity']} in last 15m"


dashboard: Optional[LiveDashboard] = None


def signal_handler(sig, frame):
    """Handle shutdown signals"""
    logger.info("Shutting down live dashboard...")
    if dashboard:
        dashboard.stop()
    sys.exit(0)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    client = MarkerApiClient(config.api_base_url)
    if not client.health():
        logger.error(f"Cannot reach marker API at {config.api_base_url}. Is web_server.py running?")
        sys.exit(1)

    def report(markers: List[Dict], arrived: List[Dict]) -> None:
        for m in arrived:
            label = "safe" if m.get("sentiment") == "like" else "unsafe"
            logger.info(f"New {label} marker at {m['latitude']:.5f}, {m['longitude']:.5f}: {m.get('comment') or ''}")
        summary = dashboard.view(time_range=config.time_range, sentiment=config.sentiment)
        logger.info(format_kpis(summary["kpis"]))

    dashboard = LiveDashboard(
        client,
        version=config.version,
        compare_versions=config.compare_versions,
        poll_interval=config.poll_interval_seconds,
        tracker=NewItemTracker(config.new_marker_seconds),
        on_refresh=report,
    )

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Starting GeoPulse live dashboard against {config.api_base_url}")
    dashboard.pull()
    dashboard.start()
    signal.pause()
