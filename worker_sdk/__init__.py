from .client import CallbackClient

__all__ = [
    "CallbackClient",
]
