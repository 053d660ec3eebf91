import unittest
from unittest import mock

import requests

from api_client import ApiError, MarkerApiClient


def _response(payload, status=200):
    resp = mock.MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.json.return_value = payload
    return resp


class TestMarkerApiClient(unittest.TestCase):
    def setUp(self):
        self.session = mock.MagicMock()
        self.client = MarkerApiClient("http://localhost:8893/", session=self.session)

    def test_get_markers_with_version(self):
        self.session.request.return_value = _response({"status": "ok", "data": [{"id": "1"}]})
        self.assertEqual(self.client.get_markers(3), [{"id": "1"}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "http://localhost:8893/api/markers"))
        self.assertEqual(kwargs["params"], {"version": 3})

    def test_get_markers_without_version(self):
        self.session.request.return_value = _response({"status": "ok", "data": []})
        self.client.get_markers("")
        self.assertEqual(self.session.request.call_args[1]["params"], {})

    def test_get_markers_failure_is_generic(self):
        self.session.request.return_value = _response({"status": "error", "message": "Internal server error"}, 500)
        with self.assertRaises(ApiError) as ctx:
            self.client.get_markers()
        self.assertEqual(ctx.exception.message, "Failed to fetch markers")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_save_marker_drops_unset_fields(self):
        self.session.request.return_value = _response({"status": "ok", "data": {"id": "abc"}})
        self.assertEqual(self.client.save_marker(latitude=1.0, longitude=2.0, sentiment="like"), {"id": "abc"})
        self.assertEqual(
            self.session.request.call_args[1]["json"],
            {"latitude": 1.0, "longitude": 2.0, "sentiment": "like"},
        )

    def test_save_marker_update_payload(self):
        self.session.request.return_value = _response({"status": "ok", "data": {"id": "abc"}})
        self.client.save_marker(marker_id="abc", sentiment="dislike", comment="")
        self.assertEqual(
            self.session.request.call_args[1]["json"],
            {"id": "abc", "sentiment": "dislike", "comment": ""},
        )

    def test_server_message_surfaces(self):
        self.session.request.return_value = _response({"status": "error", "message": "Invalid coordinates"}, 400)
        with self.assertRaises(ApiError) as ctx:
            self.client.save_marker(latitude=None, sentiment="like")
        self.assertEqual(ctx.exception.message, "Invalid coordinates")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_fallback_message_without_json(self):
        resp = _response(None, 502)
        resp.json.side_effect = ValueError("no json")
        self.session.request.return_value = resp
        with self.assertRaises(ApiError) as ctx:
            self.client.delete_marker("abc")
        self.assertEqual(ctx.exception.message, "Failed to delete marker")

    def test_non_json_success_body(self):
        resp = _response(None, 200)
        resp.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        self.session.request.return_value = resp
        with self.assertRaises(ApiError) as ctx:
            self.client.save_marker(latitude=1.0, longitude=2.0, sentiment="like")
        self.assertEqual(ctx.exception.message, "Failed to save marker")
        self.assertEqual(ctx.exception.status_code, 200)

    def test_non_object_success_body(self):
        self.session.request.return_value = _response(["not", "an", "object"])
        with self.assertRaises(ApiError) as ctx:
            self.client.get_markers()
        self.assertEqual(ctx.exception.message, "Failed to fetch markers")

    def test_delete_marker(self):
        self.session.request.return_value = _response({"status": "ok", "message": "Marker deleted"})
        self.assertEqual(self.client.delete_marker("abc")["message"], "Marker deleted")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "http://localhost:8893/api/delete-marker"))
        self.assertEqual(kwargs["json"], {"id": "abc"})

    def test_network_error(self):
        self.session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(ApiError) as ctx:
            self.client.save_marker(latitude=1.0, longitude=2.0, sentiment="like")
        self.assertIsNone(ctx.exception.status_code)

    def test_health(self):
        self.session.get.return_value = _response({"status": "healthy"})
        self.assertTrue(self.client.health())
        self.session.get.side_effect = requests.exceptions.ConnectionError("refused")
        self.assertFalse(self.client.health())


if __name__ == "__main__":
    unittest.main()
