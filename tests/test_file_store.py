import json
import os
import tempfile
import unittest

from server.db import FileStore


class FileStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "telemetry.json")
        self.store = FileStore(self.path)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _doc(self) -> dict:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def test_creates_default_document(self) -> None:
        doc = self._doc()
        self.assertEqual(doc["_counters"], {"faces": 0, "events": 0, "sessions": 0})
        for key in ("faces", "events", "students", "sessions"):
            self.assertEqual(doc[key], [])

    def test_ids_increase_monotonically(self) -> None:
        ids = [self.store.insert_event(face_label="Me", emotion="happy") for _ in range(3)]
        self.assertEqual(ids, [1, 2, 3])
        self.assertEqual(self.store.add_face("Me", [0.1, 0.2]), 1)
        self.assertEqual(self.store.add_session("Lecture", None), 1)
        self.assertEqual(self._doc()["_counters"]["events"], 3)

    def test_ids_never_repeat_after_clear(self) -> None:
        self.store.insert_event(emotion="happy")
        self.store.insert_event(emotion="sad")
        self.assertTrue(self.store.clear_all())
        self.assertEqual(self.store.insert_event(emotion="neutral"), 3)

    def test_clear_all_empties_every_collection(self) -> None:
        self.store.add_face("Me", [1.0])
        self.store.insert_event(face_label="Me", emotion="happy")
        self.store.set_student_history("a@b.c", "A", {"x": 1})
        self.store.add_session("s", {"k": "v"})

        self.store.clear_all()

        self.assertEqual(self.store.get_faces(), [])
        self.assertEqual(self.store.get_events(), [])
        self.assertEqual(self.store.get_students(), [])
        self.assertEqual(self.store.get_sessions(), [])

    def test_events_newest_first_by_timestamp(self) -> None:
        self.store.insert_event(emotion="a", timestamp="2024-01-01T00:00:02+00:00")
        self.store.insert_event(emotion="b", timestamp="2024-01-01T00:00:01+00:00")
        self.store.insert_event(emotion="c", timestamp="2024-01-01T00:00:03+00:00")
        self.assertEqual([e["emotion"] for e in self.store.get_events()], ["c", "a", "b"])

    def test_face_label_filter_is_exact(self) -> None:
        self.store.insert_event(face_label="Me", emotion="happy")
        self.store.insert_event(face_label="me", emotion="happy")
        self.store.insert_event(face_label="Meg", emotion="happy")
        rows = self.store.get_events(face_label="Me")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["face_label"], "Me")

    def test_filters_are_anded(self) -> None:
        self.store.insert_event(face_label="Me", session_id=1)
        self.store.insert_event(face_label="Me", session_id=2)
        self.store.insert_event(face_label="You", session_id=1)
        rows = self.store.get_events(face_label="Me", session_id="1")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["session_id"], 1)

    def test_limit_caps_result(self) -> None:
        for _ in range(5):
            self.store.insert_event(emotion="happy")
        self.assertEqual(len(self.store.get_events(limit=2)), 2)

    def test_student_history_upsert(self) -> None:
        self.store.set_student_history("a@b.c", "A", {"v": 1})
        self.store.set_student_history("a@b.c", "A2", {"v": 2})
        students = self.store.get_students()
        self.assertEqual(len(students), 1)
        self.assertEqual(self.store.get_student_history("a@b.c")["history"], {"v": 2})
        self.assertIsNone(self.store.get_student_history("missing@b.c"))

    def test_corrupt_file_is_recreated(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        self.assertEqual(self.store.get_events(), [])
        self.store.insert_event(emotion="happy")
        self.assertEqual(len(self._doc()["events"]), 1)

    def test_missing_keys_are_repaired(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"events": [{"id": 7, "emotion": "sad"}]}, f)
        store = FileStore(self.path)
        self.assertEqual(store.get_faces(), [])
        self.assertEqual(store.insert_event(emotion="happy"), 8)

    def test_non_object_rows_are_dropped(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({
                "events": [1, "x", None, {"id": 4, "face_label": "Me", "emotion": "sad"}],
                "students": ["x", {"email": "a@b.c", "name": "A", "history": {}}],
                "faces": [[0.1, 0.2]],
                "sessions": {"not": "a list"},
            }, f)
        store = FileStore(self.path)

        events = store.get_events(face_label="Me")
        self.assertEqual([e["id"] for e in events], [4])
        self.assertEqual(len(store.get_events()), 1)
        self.assertEqual(store.get_student_history("a@b.c")["name"], "A")
        self.assertIsNone(store.get_student_history("nobody@b.c"))
        self.assertEqual(store.get_faces(), [])
        self.assertEqual(store.get_sessions(), [])
        self.assertEqual(store.insert_event(emotion="happy"), 5)

    def test_students_newest_created_first(self) -> None:
        self.store.set_student_history("a@b.c", "A", {})
        self.store.set_student_history("b@b.c", "B", {})
        created = self.store.get_student_history("a@b.c")["created_at"]
        self.store.set_student_history("a@b.c", "A", {"v": 2})

        self.assertEqual([s["email"] for s in self.store.get_students()], ["b@b.c", "a@b.c"])
        self.assertEqual(self.store.get_student_history("a@b.c")["created_at"], created)


if __name__ == "__main__":
    unittest.main()
