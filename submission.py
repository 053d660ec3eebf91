"""
Create/edit sheet lifecycle for the tap-to-report map
"""
import logging
from typing import Callable, Dict, List, Optional, Set

from api_client import ApiError, MarkerApiClient
from marker_store import MAX_COMMENT_LENGTH, normalize_sentiment

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN_FOR_CREATE = "open-for-create"
OPEN_FOR_EDIT = "open-for-edit"

Notifier = Callable[[str, str], None]


def log_notifier(level: str, message: str) -> None:
    """Default toast: goes to the log."""
    if level == "error":
        logger.error(message)
    else:
        logger.info(message)


class SubmissionController:
    """State machine over closed / open-for-create / open-for-edit.

    Headless counterpart of the sheet on the served map page (MAP_TEMPLATE
    in web_server.py runs the same lifecycle in the browser). Use it to
    drive submissions from scripts or other Python front ends over the
    marker API.
    """

    def __init__(
        self,
        client: MarkerApiClient,
        version: Optional[int] = None,
        session_only: bool = False,
        notify: Notifier = log_notifier,
    ):
        self.client = client
        self.version = version
        self.session_only = session_only
        self.notify = notify
        self.markers: List[Dict] = []
        self.session_ids: Set[str] = set()
        self.is_loading = False
        self._reset_fields()
        self.state = CLOSED

    def _reset_fields(self) -> None:
        self.temp_marker: Optional[Dict] = None
        self.editing_id: Optional[str] = None
        self.sentiment: Optional[str] = None
        self.comment = ""

    @property
    def is_open(self) -> bool:
        return self.state != CLOSED

    def open_for_create(self, latitude: float, longitude: float) -> bool:
        """Map click. Ignored while a sheet is already open."""
        if self.is_open:
            return False
        self._reset_fields()
        self.temp_marker = {"latitude": latitude, "longitude": longitude}
        self.state = OPEN_FOR_CREATE
        return True

    def open_for_edit(self, marker: Dict) -> None:
        self._reset_fields()
        self.temp_marker = {"latitude": marker["latitude"], "longitude": marker["longitude"]}
        self.editing_id = marker["id"]
        self.sentiment = normalize_sentiment(marker.get("sentiment"))
        self.comment = (marker.get("comment") or "")[:MAX_COMMENT_LENGTH]
        self.state = OPEN_FOR_EDIT

    def select_sentiment(self, sentiment: str) -> None:
        value = normalize_sentiment(sentiment)
        if value is None:
            raise ValueError(f"Unknown sentiment: {sentiment!r}")
        self.sentiment = value

    def set_comment(self, text: str) -> None:
        self.comment = (text or "")[:MAX_COMMENT_LENGTH]

    def close(self) -> None:
        """Cancel: drop every transient field."""
        self._reset_fields()
        self.state = CLOSED

    def submit(self) -> Optional[Dict]:
        """Save the open sheet. Returns the persisted marker, or None on failure."""
        if not self.is_open or not self.temp_marker or not self.sentiment:
            self.notify("error", "Please select a sentiment (Safe/Unsafe)")
            return None

        self.is_loading = True
        try:
            if self.state == OPEN_FOR_EDIT:
                result = self.client.save_marker(
                    marker_id=self.editing_id,
                    sentiment=self.sentiment,
                    comment=self.comment,
                )
            else:
                result = self.client.save_marker(
                    latitude=self.temp_marker["latitude"],
                    longitude=self.temp_marker["longitude"],
                    sentiment=self.sentiment,
                    comment=self.comment,
                    version=self.version,
                )
        except ApiError as e:
            self.notify("error", e.message or "Failed to save marker")
            return None
        finally:
            self.is_loading = False

        was_edit = self.state == OPEN_FOR_EDIT
        if result.get("id"):
            self.session_ids.add(result["id"])
        self.notify("success", "Marker updated successfully!" if was_edit else "Marker saved successfully!")
        self.close()

        if self.session_only:
            self._merge(result)
        else:
            self.refresh()
        return result

    def _merge(self, marker: Dict) -> None:
        for i, existing in enumerate(self.markers):
            if existing.get("id") == marker.get("id"):
                self.markers[i] = marker
                return
        self.markers.append(marker)

    def delete(self, marker: Dict) -> bool:
        """Soft-delete, then re-fetch. Nothing is removed locally up front."""
        try:
            self.client.delete_marker(marker["id"])
        except ApiError as e:
            self.notify("error", e.message or "Failed to delete marker")
            return False
        self.notify("success", "Marker deleted")
        self.refresh()
        return True

    def refresh(self) -> List[Dict]:
        try:
            markers = self.client.get_markers(self.version)
        except ApiError as e:
            self.notify("error", e.message)
            return self.markers
        if self.session_only:
            markers = [m for m in markers if m.get("id") in self.session_ids]
        self.markers = markers
        return self.markers
