from .models import QueuedMessage
from .queue_db import QueueDB

__all__ = [
    "QueuedMessage",
    "QueueDB",
]
