from gesture_module.pose_library import PoseLibrary
from gesture_module.trigger_adapter import TriggerAdapter
from gesture_module.trigger_engine import TriggerEngine
from gesture_module.workflow import FrameResult, GesturePipeline

__all__ = [
    "FrameResult",
    "GesturePipeline",
    "PoseLibrary",
    "TriggerAdapter",
    "TriggerEngine",
]
