from .config import Config
from .models import CurrentSong, DownloadStatus, ItemKind, QueueItem

__all__ = ["Config", "CurrentSong", "DownloadStatus", "ItemKind", "QueueItem"]
__version__ = "0.3.0"
