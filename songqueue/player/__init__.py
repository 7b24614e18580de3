from .backend import AudioBackend, BackendEvent, EndReason, Finished, Started
from .detection import UnavailableBackend, create_backend, detect_player
from .ffplay import FfplayBackend
from .mpv import MpvBackend, MpvIPC

__all__ = [
    "AudioBackend",
    "BackendEvent",
    "EndReason",
    "Finished",
    "Started",
    "FfplayBackend",
    "MpvBackend",
    "MpvIPC",
    "UnavailableBackend",
    "create_backend",
    "detect_player",
]
