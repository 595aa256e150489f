"""Tests for pose-library document migration and the JSON store."""

from gesture_module.features import extract_features
from gesture_module.library_schema import LIBRARY_VERSION, build_document, migrate_library_document
from gesture_module.library_store import PoseLibraryStore
from utils.event_bus import Channel

LABELS = ["a", "b", "c"]


def _raw_sample(landmarks, **extra):
    sample = {
        "sampleId": "s-1",
        "capturedAt": "2025-01-01T00:00:00.000Z",
        "handedness": "Right",
        "rawLandmarks": landmarks,
        "feature": extract_features(landmarks).to_dict(),
    }
    sample.update(extra)
    return sample


class TestMigrateLibraryDocument:
    def test_current_shape(self, landmarks):
        """A version 2 document keeps labels and samples."""
        raw = {
            "version": 2,
            "labels": ["up", "palm", "peace"],
            "slots": [{"samples": [_raw_sample(landmarks("thumbs_up"))]}, None, None],
        }

        labels, slots = migrate_library_document(raw, 3, LABELS)

        assert labels == ["up", "palm", "peace"]
        assert slots[0].samples[0].sample_id == "s-1"
        assert slots[0].samples[0].handedness == "right"
        assert slots[0].label == "up"
        assert slots[1] is None and slots[2] is None

    def test_bare_list_with_single_legacy_sample(self, landmarks):
        """A v1 bare slot list whose slot is a single sample becomes a one-sample bank."""
        raw = [None, _raw_sample(landmarks("open_palm"))]

        labels, slots = migrate_library_document(raw, 3, LABELS)

        assert labels == LABELS
        assert slots[0] is None
        assert len(slots[1].samples) == 1
        assert slots[1].samples[0].slot_index == 1
        assert slots[2] is None

    def test_poses_key_and_estimation_field(self, landmarks):
        """``poses`` replaces ``slots`` and features may live under ``estimation``."""
        points = landmarks("victory")
        legacy = _raw_sample(points)
        legacy["estimation"] = legacy.pop("feature")
        del legacy["sampleId"]

        _, slots = migrate_library_document({"poses": [None, None, {"samples": [legacy]}]}, 3, LABELS)

        sample = slots[2].samples[0]
        assert not sample.feature.is_empty
        assert sample.sample_id == "slot-2-sample-0-2025-01-01T00:00:00.000Z"

    def test_incomplete_samples_dropped(self, landmarks):
        """Samples without raw landmarks or embedding are removed; empty slots become None."""
        points = landmarks("fist")
        raw = {
            "slots": [
                {"samples": [{"rawLandmarks": points}, {"feature": extract_features(points).to_dict()}]},
                {"samples": [_raw_sample(points), {"rawLandmarks": []}]},
            ]
        }

        _, slots = migrate_library_document(raw, 3, LABELS)

        assert slots[0] is None
        assert len(slots[1].samples) == 1

    def test_unrecognized_shape(self):
        """Documents without a slot list are rejected."""
        assert migrate_library_document({"foo": 1}, 3, LABELS) is None
        assert migrate_library_document("nope", 3, LABELS) is None
        assert migrate_library_document(None, 3, LABELS) is None

    def test_build_document_round_trip(self, landmarks):
        """build_document output migrates back to the same state."""
        raw = {"labels": LABELS, "slots": [{"samples": [_raw_sample(landmarks("fist"))]}]}
        labels, slots = migrate_library_document(raw, 3, LABELS)

        document = build_document(labels, slots)
        again = migrate_library_document(document, 3, LABELS)

        assert document["version"] == LIBRARY_VERSION
        assert build_document(*again) == document


class TestPoseLibraryStore:
    def test_documents_are_independent(self, tmp_path):
        """Library, snapshots and settings live in separate files."""
        store = PoseLibraryStore(user_id="u1", base_dir=tmp_path)

        assert store.load_library() is None
        assert store.load_snapshots() == []
        assert store.load_settings() is None

        assert store.save_settings({"armed": True})
        assert store.load_settings() == {"armed": True}
        assert store.load_library() is None
        assert (tmp_path / "u1" / "action_settings.json").exists()

    def test_corrupt_file_loads_as_none(self, tmp_path):
        """An unparsable document falls back to defaults instead of raising."""
        store = PoseLibraryStore(user_id="u1", base_dir=tmp_path)
        (tmp_path / "u1").mkdir()
        (tmp_path / "u1" / "pose_library.json").write_text("{not json")

        assert store.load_library() is None

    def test_unwritable_save_reports_false(self, tmp_path):
        """A failing write is swallowed and reported."""
        store = PoseLibraryStore(user_id="u1", base_dir=tmp_path)

        assert store.save_library({"bad": object()}) is False


class TestChannel:
    def test_failing_subscriber_is_isolated(self):
        """One raising subscriber does not stop delivery to the others."""
        channel = Channel("test")
        seen = []

        def _boom(_):
            raise RuntimeError("boom")

        channel.subscribe(_boom)
        channel.subscribe(seen.append)

        assert channel.publish(1) == 1
        assert seen == [1]

    def test_unsubscribe(self):
        """The callable returned by subscribe removes the handler."""
        channel = Channel("test")
        seen = []
        unsubscribe = channel.subscribe(seen.append)

        unsubscribe()
        channel.publish(1)

        assert seen == []
        assert len(channel) == 0
