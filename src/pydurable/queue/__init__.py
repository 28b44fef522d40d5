"""Queue contract and in-memory implementation."""

from pydurable.queue.base import DurableQueue, MessageHandler, QueueError
from pydurable.queue.memory import InMemoryQueue

__all__ = ["DurableQueue", "InMemoryQueue", "MessageHandler", "QueueError"]
