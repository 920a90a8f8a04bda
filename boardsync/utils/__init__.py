from boardsync.utils.pacing import paced
from boardsync.utils.retry import RetryPolicy

__all__ = ["RetryPolicy", "paced"]
