import unittest
from unittest import mock

import requests

from vision.shipper import EventShipper


def _response(status=200, payload=None):
    r = mock.Mock()
    r.status_code = status
    r.text = ""
    r.json.return_value = payload
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        r.raise_for_status.return_value = None
    return r


class EventShipperTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.http = mock.Mock()
        self.shipper = EventShipper("http://collector:4000/", session=self.http)

    def tearDown(self) -> None:
        self.shipper.close(wait=True)

    def test_ship_posts_event(self) -> None:
        self.http.post.return_value = _response(200, {"ok": True, "id": 1})
        future = self.shipper.ship({"face_label": "Me", "emotion": "happy"})
        self.assertTrue(future.result(timeout=2))
        url = self.http.post.call_args[0][0]
        self.assertEqual(url, "http://collector:4000/events")
        self.assertEqual(self.shipper.sent, 1)

    def test_network_failure_is_swallowed(self) -> None:
        self.http.post.side_effect = requests.ConnectionError("down")
        future = self.shipper.ship({"face_label": "Me"})
        self.assertFalse(future.result(timeout=2))
        self.assertEqual(self.shipper.failed, 1)

    def test_non_200_is_counted_as_failure(self) -> None:
        self.http.post.return_value = _response(503)
        self.assertFalse(self.shipper.ship({}).result(timeout=2))
        self.assertEqual(self.shipper.failed, 1)

    def test_disabled_or_closed_ships_nothing(self) -> None:
        disabled = EventShipper("http://x", enabled=False, session=self.http)
        self.assertIsNone(disabled.ship({}))
        disabled.close()

        self.shipper.close(wait=True)
        self.assertIsNone(self.shipper.ship({}))
        self.http.post.assert_not_called()

    def test_enroll_face_raises_on_rejection(self) -> None:
        self.http.post.return_value = _response(400)
        with self.assertRaises(requests.RequestException):
            self.shipper.enroll_face("Me", [0.1, 0.2])

    def test_enroll_face_sends_floats(self) -> None:
        self.http.post.return_value = _response(200, {"ok": True, "id": 1})
        self.assertTrue(self.shipper.enroll_face("Me", (1, 2)))
        self.assertEqual(self.http.post.call_args[1]["json"], {"label": "Me", "descriptor": [1.0, 2.0]})

    def test_fetch_faces_unreachable(self) -> None:
        self.http.get.side_effect = requests.ConnectionError("down")
        self.assertEqual(self.shipper.fetch_faces(), [])

    def test_open_session(self) -> None:
        self.http.post.return_value = _response(200, {"ok": True, "id": 9})
        self.assertEqual(self.shipper.open_session("Reading"), 9)
        self.http.post.side_effect = requests.Timeout("slow")
        self.assertIsNone(self.shipper.open_session("Reading"))


if __name__ == "__main__":
    unittest.main()
