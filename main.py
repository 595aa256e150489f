"""Entry point for the gesture bridge: frame pipeline, action router and command broker."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from api.server import create_app
from command_controller.bridge import CommandBroker
from command_controller.router import ActionRouter
from command_controller.remote import BrokerRemoteClient, HttpBridgeClient, RemoteBridgeClient
from gesture_module.library_store import PoseLibraryStore
from gesture_module.pose_classes import DEFAULT_TRIGGERS, POSE_ACTION_TYPE, default_slot_labels
from gesture_module.pose_library import PoseLibrary
from gesture_module.trigger_adapter import TriggerAdapter
from gesture_module.workflow import GesturePipeline
from utils.log_utils import tprint
from utils.settings_store import bridge_timeout_secs, get_int_setting, get_settings, refresh_settings


@dataclass
class Runtime:
    store: PoseLibraryStore
    pipeline: GesturePipeline
    broker: CommandBroker
    router: ActionRouter
    adapter: TriggerAdapter


def _load_env_files() -> None:
    """Load .env files from common locations (repo, home)."""
    candidates: list[Path] = []
    cwd = Path.cwd()
    candidates.extend([cwd / "env/.env", cwd / ".env"])

    module_root = Path(__file__).resolve().parent
    candidates.extend([module_root / "env/.env", module_root / ".env"])

    home = Path.home()
    candidates.append(home / ".gesture-bridge.env")

    for path in candidates:
        if path.exists():
            load_dotenv(dotenv_path=str(path), override=False)


def select_remote_client(broker: CommandBroker) -> RemoteBridgeClient:
    """Use a remote bridge server when BRIDGE_URL is set, else the in-process broker."""
    bridge_url = os.getenv("BRIDGE_URL", "").strip()
    if bridge_url:
        tprint(f"[MAIN] Routing remote commands to {bridge_url}")
        return HttpBridgeClient(bridge_url, timeout_secs=bridge_timeout_secs() + 5)
    return BrokerRemoteClient(broker)


def build_runtime(user_id: str | None = None) -> Runtime:
    """Wire the pipeline into the router, and the router into the broker."""
    user_id = user_id or str(get_settings().get("user_id") or "default")
    store = PoseLibraryStore(user_id=user_id)
    library = PoseLibrary(slot_labels=default_slot_labels(), store=store)
    pipeline = GesturePipeline(library=library, triggers=DEFAULT_TRIGGERS)

    broker = CommandBroker()
    router = ActionRouter(
        store=store,
        remote_client=select_remote_client(broker),
        pose_label=library.slot_label,
    )
    adapter = TriggerAdapter(pipeline.engine.fired, {POSE_ACTION_TYPE: router.handle_trigger})
    adapter.start()
    return Runtime(store=store, pipeline=pipeline, broker=broker, router=router, adapter=adapter)


def bootstrap() -> None:
    """Load configuration, build the runtime and serve it."""
    if sys.version_info < (3, 10):
        raise RuntimeError("Python 3.10+ required.")
    _load_env_files()
    settings = refresh_settings()

    runtime = build_runtime()
    app = create_app(broker=runtime.broker, pipeline=runtime.pipeline, router=runtime.router)

    host = str(settings.get("api_host", "127.0.0.1"))
    port = get_int_setting("api_port", 4173)
    tprint(f"[MAIN] Serving gesture bridge on http://{host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port, access_log=bool(settings.get("http_access_log", False)))
    except KeyboardInterrupt:
        tprint("[MAIN] Received interrupt. Shutting down...")
    finally:
        runtime.adapter.stop()


if __name__ == "__main__":
    bootstrap()
