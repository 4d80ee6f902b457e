import contextvars
import uuid
from typing import Any, Dict

log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


class LoggingContext:
    """Context manager for adding contextual information to logs.

    Helps track operations that belong to the same request or the same
    scheduler pass. Nested contexts inherit the keys of the enclosing one.
    """

    def __init__(self, request_id: str | None = None, **context):
        self.request_id = request_id or str(uuid.uuid4())[:8]
        self.context = {"request_id": self.request_id, **context}
        self.token = None

    async def __aenter__(self):
        """Enter the asynchronous context, set the log context.

        Returns
        -------
        LoggingContext
            Instance of `LoggingContext`.
        """
        self.token = log_context.set({**log_context.get({}), **self.context})
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit the asynchronous context, reset the log context."""
        if self.token is not None:
            log_context.reset(self.token)
