"""
Who is changing the order.

The request layer sets the current actor in a context variable; the capture
hooks read it when a write commits. A session can override it with
``session.info["actor_id"]`` (scripts and consumers that have no request).
"""
import contextvars
from typing import Optional

_actor_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("order_history_actor", default=None)


def set_actor(actor_id: Optional[str]) -> contextvars.Token:
    """
    Set the actor for the current context.

    Returns:
        Token that can be passed to ``reset_actor``
    """
    return _actor_var.set(actor_id)


def get_actor() -> Optional[str]:
    return _actor_var.get()


def reset_actor(token: contextvars.Token) -> None:
    _actor_var.reset(token)


class ActorContext:
    """
    Context manager for setting the actor.

    Example:
        >>> with ActorContext("user-42"):
        ...     db.commit()  # history records changed_by = "user-42"
    """

    def __init__(self, actor_id: Optional[str]):
        self.actor_id = actor_id
        self.token = None

    def __enter__(self):
        self.token = set_actor(self.actor_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            reset_actor(self.token)
        return False
