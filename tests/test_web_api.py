import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from config import AppConfig, StoreConfig
from marker_store import MarkerStore, StoreError
from web_server import create_app


class FailingStore(MarkerStore):
    def list_markers(self, version=None):
        raise StoreError("connection refused")

    def create_marker(self, row):
        raise StoreError("connection refused")

    def soft_delete_marker(self, marker_id):
        raise StoreError("connection refused")


class TestWebAPI(unittest.TestCase):
    def setUp(self):
        self._tmp_dir = tempfile.TemporaryDirectory()
        db_path = Path(self._tmp_dir.name) / "geopulse_test.db"
        config = AppConfig(store=StoreConfig(backend="sqlite", database_path=str(db_path)))
        self.app = create_app(config)
        self.client = self.app.test_client()

    def tearDown(self):
        self.app.config["MARKER_STORE"].close()
        self._tmp_dir.cleanup()

    def save(self, **payload):
        return self.client.post("/api/save-marker", json=payload)

    def list_data(self, query=""):
        resp = self.client.get("/api/markers" + query)
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["status"], "ok")
        return body["data"]

    def test_save_list_delete_round_trip(self):
        resp = self.save(latitude=47.07, longitude=15.44, sentiment="like")
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["status"], "ok")
        record = body["data"]
        self.assertTrue(record["id"])
        self.assertEqual(record["latitude"], 47.07)
        self.assertEqual(record["longitude"], 15.44)
        self.assertEqual(record["sentiment"], "like")
        self.assertIsNone(record["deleted_at"])

        ids = [m["id"] for m in self.list_data()]
        self.assertIn(record["id"], ids)

        resp = self.client.post("/api/delete-marker", json={"id": record["id"]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"status": "ok", "message": "Marker deleted"})

        ids = [m["id"] for m in self.list_data()]
        self.assertNotIn(record["id"], ids)

    def test_delete_accepts_http_delete(self):
        record = self.save(latitude=1.0, longitude=2.0, sentiment="dislike").get_json()["data"]
        resp = self.client.delete("/api/delete-marker", json={"id": record["id"]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.list_data(), [])

    def test_invalid_inserts_rejected_before_store(self):
        bad_payloads = [
            {"latitude": "47.07", "longitude": 15.44, "sentiment": "like"},
            {"latitude": True, "longitude": 15.44, "sentiment": "like"},
            {"longitude": 15.44, "sentiment": "like"},
            {"latitude": 47.07, "longitude": 15.44},
            {"latitude": 47.07, "longitude": 15.44, "sentiment": "meh"},
            {"latitude": 47.07, "longitude": 15.44, "sentiment": "like", "comment": 42},
        ]
        for payload in bad_payloads:
            resp = self.save(**payload)
            self.assertEqual(resp.status_code, 400, payload)
            self.assertEqual(resp.get_json()["status"], "error")
        self.assertEqual(self.list_data(), [])

    def test_non_object_body_rejected(self):
        resp = self.client.post("/api/save-marker", data="not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_safe_unsafe_aliases_normalized(self):
        record = self.save(latitude=1.0, longitude=2.0, sentiment="unsafe").get_json()["data"]
        self.assertEqual(record["sentiment"], "dislike")

    def test_update_changes_only_sentiment_and_comment(self):
        record = self.save(latitude=47.07, longitude=15.44, sentiment="like", version=3).get_json()["data"]

        resp = self.save(
            id=record["id"],
            latitude=0.0,
            longitude=0.0,
            version=9,
            sentiment="dislike",
            comment="dark underpass",
        )
        self.assertEqual(resp.status_code, 200)
        updated = resp.get_json()["data"]
        self.assertEqual(updated["id"], record["id"])
        self.assertEqual(updated["sentiment"], "dislike")
        self.assertEqual(updated["comment"], "dark underpass")
        self.assertEqual(updated["latitude"], 47.07)
        self.assertEqual(updated["longitude"], 15.44)
        self.assertEqual(updated["version"], 3)

    def test_update_unknown_marker_is_404(self):
        resp = self.save(id="does-not-exist", sentiment="like")
        self.assertEqual(resp.status_code, 404)

    def test_update_with_bad_sentiment_is_400(self):
        record = self.save(latitude=1.0, longitude=2.0, sentiment="like").get_json()["data"]
        resp = self.save(id=record["id"], sentiment="maybe")
        self.assertEqual(resp.status_code, 400)

    def test_non_integer_version_stored_as_null(self):
        record = self.save(latitude=1.0, longitude=2.0, sentiment="like", version="2").get_json()["data"]
        self.assertIsNone(record["version"])

    def test_list_filters_by_version_newest_first(self):
        first = self.save(latitude=1.0, longitude=1.0, sentiment="like", version=1).get_json()["data"]
        second = self.save(latitude=2.0, longitude=2.0, sentiment="like", version=1).get_json()["data"]
        self.save(latitude=3.0, longitude=3.0, sentiment="like", version=2)

        data = self.list_data("?version=1")
        self.assertEqual([m["id"] for m in data], [second["id"], first["id"]])
        self.assertEqual(len(self.list_data()), 3)

    def test_list_rejects_non_integer_version(self):
        resp = self.client.get("/api/markers?version=abc")
        self.assertEqual(resp.status_code, 400)

    def test_delete_requires_id(self):
        resp = self.client.post("/api/delete-marker", json={})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["message"], "Missing ID")

    def test_wrong_method_is_405_json(self):
        resp = self.client.get("/api/save-marker")
        self.assertEqual(resp.status_code, 405)
        self.assertEqual(resp.get_json(), {"status": "error", "message": "Method not allowed"})

        resp = self.client.put("/api/delete-marker", json={"id": "x"})
        self.assertEqual(resp.status_code, 405)

    def test_preflight_allows_cross_origin(self):
        resp = self.client.open(
            "/api/save-marker",
            method="OPTIONS",
            headers={
                "Origin": "https://example.org",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Access-Control-Allow-Origin", resp.headers)
        self.assertEqual(resp.data, b"")

    def test_dashboard_view_kpis(self):
        for sentiment in ("like", "like", "like", "dislike"):
            self.save(latitude=47.07, longitude=15.44, sentiment=sentiment)

        resp = self.client.get("/api/dashboard?range=all&sentiment=all")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()["data"]
        self.assertEqual(len(data["markers"]), 4)
        self.assertEqual(data["kpis"], {"total": 4, "positivity": 75, "velocity": 4})

        data = self.client.get("/api/dashboard?sentiment=dislike").get_json()["data"]
        self.assertEqual(data["kpis"]["total"], 1)
        self.assertEqual(data["kpis"]["positivity"], 0)

    def test_dashboard_compare_mode(self):
        self.save(latitude=1.0, longitude=1.0, sentiment="like", version=1)
        self.save(latitude=1.0, longitude=1.0, sentiment="dislike", version=2)
        self.save(latitude=1.0, longitude=1.0, sentiment="like", version=2)

        data = self.client.get("/api/dashboard?compare=1,2").get_json()["data"]
        self.assertEqual(data["kpis"], {
            "A": {"total": 1, "positivity": 100},
            "B": {"total": 2, "positivity": 50},
        })

        data = self.client.get("/api/dashboard?compare=1,2&source=B").get_json()["data"]
        self.assertEqual({m["source"] for m in data["markers"]}, {"B"})

    def test_dashboard_rejects_unknown_range(self):
        resp = self.client.get("/api/dashboard?range=forever")
        self.assertEqual(resp.status_code, 400)

    def test_hexbins_endpoint(self):
        self.save(latitude=47.07, longitude=15.44, sentiment="like")
        self.save(latitude=47.07, longitude=15.44, sentiment="dislike")

        resp = self.client.get("/api/hexbins?zoom=13")
        self.assertEqual(resp.status_code, 200)
        collection = resp.get_json()
        self.assertEqual(collection["type"], "FeatureCollection")
        self.assertEqual(collection["resolution"], 9)
        self.assertEqual(len(collection["features"]), 1)
        props = collection["features"][0]["properties"]
        self.assertEqual(props["count"], 2)
        self.assertEqual(props["density"], 1.0)

    def test_heatmap_endpoint(self):
        self.save(latitude=47.07, longitude=15.44, sentiment="like")
        data = self.client.get("/api/heatmap").get_json()["data"]
        self.assertEqual(data["points"], [[47.07, 15.44, 1.0]])
        self.assertEqual(data["options"]["radius"], 25)

    def test_pages_render(self):
        self.assertEqual(self.client.get("/").status_code, 200)
        self.assertEqual(self.client.get("/stats").status_code, 200)

    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "healthy")


class TestMisconfiguredServer(unittest.TestCase):
    def test_missing_credentials_answer_500(self):
        config = AppConfig(store=StoreConfig(backend="supabase"))
        client = create_app(config).test_client()

        resp = client.get("/api/markers")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()["message"], "Server configuration error: Missing URL and Key")

        resp = client.post("/api/save-marker", json={"latitude": 1.0, "longitude": 2.0, "sentiment": "like"})
        self.assertEqual(resp.status_code, 500)

        resp = client.get("/api/health")
        self.assertEqual(resp.get_json()["status"], "misconfigured")

    def test_missing_key_only(self):
        config = AppConfig(store=StoreConfig(backend="supabase", supabase_url="https://x.supabase.co"))
        client = create_app(config).test_client()
        resp = client.post("/api/delete-marker", json={"id": "abc"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()["message"], "Server configuration error: Missing Key")


class TestStoreFailures(unittest.TestCase):
    def setUp(self):
        self.client = create_app(AppConfig(), store=FailingStore()).test_client()

    def test_list_failure_is_generic_500(self):
        resp = self.client.get("/api/markers")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"status": "error", "message": "Internal server error"})

    def test_save_failure_is_500(self):
        resp = self.client.post("/api/save-marker", json={"latitude": 1.0, "longitude": 2.0, "sentiment": "like"})
        self.assertEqual(resp.status_code, 500)

    def test_invalid_input_still_400(self):
        resp = self.client.post("/api/save-marker", json={"latitude": 1.0})
        self.assertEqual(resp.status_code, 400)


class StaticStore(MarkerStore):
    def __init__(self, markers):
        self.markers = markers

    def list_markers(self, version=None):
        return list(self.markers)


def stored(marker_id, created_at, sentiment="like"):
    return {
        "id": marker_id,
        "latitude": 47.07,
        "longitude": 15.44,
        "sentiment": sentiment,
        "comment": None,
        "version": None,
        "created_at": created_at,
        "updated_at": created_at,
        "deleted_at": None,
    }


class TestDashboardTimestamps(unittest.TestCase):
    def client_for(self, markers):
        return create_app(AppConfig(), store=StaticStore(markers)).test_client()

    def test_today_follows_viewer_timezone(self):
        # Graz in summer: getTimezoneOffset() == -120
        graz = timezone(timedelta(hours=2))
        midnight = datetime.now(graz).replace(hour=0, minute=0, second=0, microsecond=0)
        client = self.client_for([
            stored("after-midnight", (midnight + timedelta(minutes=30)).astimezone(timezone.utc).isoformat()),
            stored("before-midnight", (midnight - timedelta(minutes=30)).astimezone(timezone.utc).isoformat()),
        ])

        resp = client.get("/api/dashboard?range=today&tz_offset=-120")
        self.assertEqual(resp.status_code, 200)
        ids = [m["id"] for m in resp.get_json()["data"]["markers"]]
        self.assertEqual(ids, ["after-midnight"])

    def test_bad_timezone_offset_is_400(self):
        client = self.client_for([])
        self.assertEqual(client.get("/api/dashboard?range=today&tz_offset=abc").status_code, 400)
        self.assertEqual(client.get("/api/dashboard?range=today&tz_offset=5000").status_code, 400)

    def test_trimmed_fraction_timestamps_accepted(self):
        created = (datetime.now(timezone.utc) - timedelta(minutes=1)).replace(microsecond=123450)
        stamp = created.isoformat().replace(".123450", ".12345")
        client = self.client_for([stored("pg", stamp)])
        for time_range in ("15m", "1h", "today", "all"):
            resp = client.get(f"/api/dashboard?range={time_range}")
            self.assertEqual(resp.status_code, 200, time_range)
            self.assertEqual(resp.get_json()["data"]["kpis"]["velocity"], 1)

    def test_unreadable_stored_timestamp_is_500(self):
        client = self.client_for([stored("broken", "not a timestamp")])
        for path in ("/api/dashboard?range=today", "/api/hexbins?range=1h", "/api/heatmap?range=all"):
            resp = client.get(path)
            self.assertEqual(resp.status_code, 500, path)
            self.assertEqual(resp.get_json(), {"status": "error", "message": "Internal server error"})


if __name__ == "__main__":
    unittest.main()
