"""Tests for the FastAPI bridge, pose and settings routes."""

import asyncio
import threading
import time
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from command_controller.action_settings import ActionSettings
from command_controller.bridge import CommandBroker
from command_controller.capabilities import CapabilityRegistry
from command_controller.router import ActionRouter
from gesture_module.workflow import GesturePipeline


@pytest.fixture
def broker():
    return CommandBroker(timeout_secs=1)


@pytest.fixture
def client(broker):
    return TestClient(create_app(broker=broker))


@pytest.fixture
def pipeline():
    return GesturePipeline()


@pytest.fixture
def pose_client(pipeline):
    return TestClient(create_app(broker=CommandBroker(timeout_secs=1), pipeline=pipeline))


def _running_loop():
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _frame(landmarks, gesture="victory", timestamp=0):
    return {"timestamp": timestamp, "hands": [{"landmarks": landmarks(gesture), "handedness": "Right", "score": 0.9}]}


class TestBridgeRoutes:
    def test_root(self, client):
        """The root page reports the server is up."""
        response = client.get("/")

        assert response.status_code == 200
        assert "Status: OK" in response.text

    def test_status_unknown_session(self, client, broker):
        """Status for a fresh session is all zeros and creates nothing."""
        response = client.get("/api/bridge/status", params={"session": "lab"})

        assert response.status_code == 200
        body = response.json()
        assert body["sessionId"] == "lab"
        assert body["helpersConnected"] == 0
        assert body["pendingCommands"] == 0
        assert broker.session_ids() == []

    def test_command_without_helper_is_409(self, client):
        """Commands to a session with no helper are rejected before validation."""
        response = client.post("/api/bridge/command", json={"sessionId": "lab", "command": {}})

        assert response.status_code == 409
        assert response.json() == {"error": 'No target helper connected for session "lab".'}

    def test_command_missing_action_is_400(self, client, broker):
        """With a helper connected, a command without an action is a 400."""
        broker.connect("lab")

        response = client.post("/api/bridge/command", json={"sessionId": "lab", "command": {"id": "c1"}})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing command.action."}

    def test_command_round_trip(self):
        """A dispatched command returns the helper's result with the assigned id."""
        broker = MagicMock(spec=CommandBroker)
        broker.status.return_value = {"helpersConnected": 1}
        broker.prepare_command.side_effect = lambda sid, command: {**command, "id": "c-42", "sessionId": sid}
        broker.dispatch = AsyncMock(return_value={"ok": True, "output": "done"})
        client = TestClient(create_app(broker=broker))

        response = client.post(
            "/api/bridge/command", json={"targetSessionId": "desk", "command": {"action": "remote_read_screenshot_summarize"}}
        )

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "sessionId": "desk",
            "commandId": "c-42",
            "result": {"ok": True, "output": "done"},
        }
        assert broker.dispatch.await_args.args[0] == "desk"

    def test_result_missing_command_id(self, client):
        """Posting a result without an id is a 400."""
        response = client.post("/api/bridge/result", json={"sessionId": "lab", "result": {"ok": True}})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing commandId."}

    def test_result_without_pending_is_404(self, client):
        """A result for an unknown command is a 404."""
        response = client.post("/api/bridge/result", json={"sessionId": "lab", "commandId": "c9", "result": {}})

        assert response.status_code == 404
        assert response.json() == {"error": 'No pending command found for id "c9" in session "lab".'}

    def test_result_body_without_result_key(self):
        """When no result field is sent, the whole body is delivered as the result."""
        broker = MagicMock(spec=CommandBroker)
        broker.resolve.return_value = True
        client = TestClient(create_app(broker=broker))

        response = client.post("/api/bridge/result", json={"sessionId": "lab", "id": "c1", "ok": True})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "sessionId": "lab", "commandId": "c1"}
        assert broker.resolve.call_args.args == ("lab", "c1", {"sessionId": "lab", "id": "c1", "ok": True})

    def test_result_route_resolves_on_event_loop(self):
        """A posted result fulfils a waiting command from the broker's loop thread."""
        broker = CommandBroker(timeout_secs=5)
        loops = {}
        original_dispatch, original_resolve = broker.dispatch, broker.resolve

        def dispatch(*args):
            loops["dispatch"] = _running_loop()
            return original_dispatch(*args)

        def resolve(*args):
            loops["resolve"] = _running_loop()
            return original_resolve(*args)

        broker.dispatch, broker.resolve = dispatch, resolve
        responses = []

        with TestClient(create_app(broker=broker)) as client:
            client.portal.call(broker.connect, "lab")
            waiter = threading.Thread(
                target=lambda: responses.append(
                    client.post("/api/bridge/command", json={"sessionId": "lab", "command": {"id": "c1", "action": "x"}})
                )
            )
            waiter.start()
            deadline = time.monotonic() + 5
            while client.get("/api/bridge/status", params={"session": "lab"}).json()["pendingCommands"] == 0:
                assert time.monotonic() < deadline
                time.sleep(0.01)

            posted = client.post("/api/bridge/result", json={"sessionId": "lab", "commandId": "c1", "result": {"ok": True}})
            waiter.join(5)

        assert posted.status_code == 200
        assert responses[0].json()["result"] == {"ok": True}
        assert loops["resolve"] is not None
        assert loops["resolve"] is loops["dispatch"]


class TestPoseRoutes:
    def test_frame_fires_trigger(self, pose_client, landmarks):
        """Frames posted past the hold time report the fired trigger."""
        first = pose_client.post("/api/frames", json=_frame(landmarks, timestamp=0))
        second = pose_client.post("/api/frames", json=_frame(landmarks, timestamp=500))

        assert first.json()["fired"] == []
        assert second.json()["fired"] == ["pose-2-trigger"]
        assert second.json()["bestMatch"]["slotIndex"] == 2

    def test_capture_requires_a_hand(self, pose_client):
        """Capturing before any hand was seen is a 409."""
        response = pose_client.post("/api/poses/0/capture")

        assert response.status_code == 409

    def test_capture_label_and_clear(self, pose_client, landmarks):
        """Capture, rename and clear a slot through the API."""
        pose_client.post("/api/frames", json=_frame(landmarks, "thumbs_up"))

        captured = pose_client.post("/api/poses/0/capture", json={"detector_info": {"model": "test"}})
        labeled = pose_client.post("/api/poses/0/label", json={"label": "like"})
        listed = pose_client.get("/api/poses").json()
        cleared = pose_client.post("/api/poses/0/clear")

        assert captured.json()["sampleCounts"] == [1, 0, 0]
        assert captured.json()["sampleId"].startswith("slot-0-sample-")
        assert labeled.json() == {"status": "ok", "label": "like"}
        assert listed["labels"][0] == "like"
        assert listed["sampleCounts"] == [1, 0, 0]
        assert cleared.json()["sampleCounts"] == [0, 0, 0]

    def test_library_mutations_run_on_event_loop(self, pose_client, pipeline, landmarks):
        """Capture, label and clear touch the library from the loop thread that serves frames."""
        library = pipeline.library
        loops = []
        for name in ("capture_at", "set_slot_label", "clear_slot"):
            original = getattr(library, name)

            def spy(*args, _original=original, **kwargs):
                loops.append(_running_loop())
                return _original(*args, **kwargs)

            setattr(library, name, spy)

        pose_client.post("/api/frames", json=_frame(landmarks))
        pose_client.post("/api/poses/1/capture")
        pose_client.post("/api/poses/1/label", json={"label": "wave"})
        pose_client.post("/api/poses/1/clear")

        assert len(loops) == 3
        assert all(loop is not None for loop in loops)

    def test_unknown_slot_is_404(self, pose_client):
        """Slot indices outside the library are rejected."""
        assert pose_client.post("/api/poses/7/clear").status_code == 404

    def test_import_validation(self, pose_client):
        """Importing state without slots is a 400."""
        response = pose_client.post("/api/poses/import", json={"labels": ["x"]})

        assert response.status_code == 400

    def test_import_round_trip(self, pose_client, pipeline, landmarks):
        """Exported state can be imported back through the API."""
        pose_client.post("/api/frames", json=_frame(landmarks))
        pose_client.post("/api/poses/2/capture")
        exported = pose_client.get("/api/poses").json()
        pose_client.post("/api/poses/2/clear")

        response = pose_client.post("/api/poses/import", json=exported)

        assert response.status_code == 200
        assert response.json()["sampleCounts"] == [0, 0, 1]
        assert pipeline.library.sample_counts() == [0, 0, 1]

    def test_snapshots_and_restore(self, pose_client, landmarks):
        """Snapshots are listed and an earlier one can be restored."""
        pose_client.post("/api/frames", json=_frame(landmarks))
        pose_client.post("/api/poses/1/capture")

        items = pose_client.get("/api/poses/snapshots").json()["items"]
        restored = pose_client.post(f"/api/poses/snapshots/{items[0]['id']}/restore")

        assert [item["reason"] for item in items] == ["seeded-defaults", "captured-slot-1"]
        assert restored.json()["sampleCounts"] == [0, 0, 0]
        assert pose_client.post("/api/poses/snapshots/missing/restore").status_code == 404


class TestSettingsRoutes:
    @pytest.fixture
    def settings_client(self):
        registry = CapabilityRegistry({"text_prompt": Mock(return_value="ok")})
        router = ActionRouter(registry=registry, settings=ActionSettings())
        return TestClient(create_app(broker=CommandBroker(timeout_secs=1), router=router)), router

    def test_availability(self, settings_client):
        """Availability lists registered capabilities."""
        client, _ = settings_client

        body = client.get("/api/availability").json()

        assert body["ok"] is True
        assert body["capabilities"] == ["text_prompt"]

    def test_settings_patch(self, settings_client):
        """A settings patch is merged and returned normalized."""
        client, router = settings_client

        response = client.post("/api/settings", json={"armed": True, "cooldownMs": 99999})

        assert response.status_code == 200
        assert response.json()["armed"] is True
        assert response.json()["cooldownMs"] == 5000
        assert router.settings.armed is True
        assert client.get("/api/settings").json()["cooldownMs"] == 5000

    def test_settings_patch_must_be_object(self, settings_client):
        """Non-object patches are rejected."""
        client, _ = settings_client

        assert client.post("/api/settings", json=[1, 2]).status_code == 400
