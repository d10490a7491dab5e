"""Error taxonomy and the logging boundary shared by every public operation.

Four failure classes surface to callers:

- NotFoundError: an agent/task/subscription/node/edge id does not resolve
- InvalidStateError: a lifecycle transition the current status forbids
- ValidationError: malformed input rejected at the API boundary
- DependencyError: the durable store failed (connection, constraint, timeout)

Each carries the ids and values needed to log or display it. ``logged_operation``
wraps a service method so failures are logged once with the call arguments as
structured context and then re-raised unchanged.
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

from .logging_utils import get_logger

F = TypeVar("F", bound=Callable[..., Any])


class AtlasError(Exception):
    """Base class for all errors raised by the coordination core."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = context


class NotFoundError(AtlasError):
    """Raised when a requested entity does not exist (or is soft-deleted)."""

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity.capitalize()} not found: {entity_id}",
            entity=entity,
            entity_id=str(entity_id),
        )


class NoModuleOwnerError(NotFoundError):
    """Raised by task routing when no ACTIVE agent owns the target module."""

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__("module owner", module)
        self.args = (f"No active agent found for module: {module}",)


class InvalidStateError(AtlasError):
    """Raised when an operation is attempted from a status that forbids it."""

    def __init__(self, *, entity_id: Any, current: str, attempted: str, entity: str = "agent") -> None:
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} {entity_id} from status: {current}",
            entity=entity,
            entity_id=str(entity_id),
            current=current,
            attempted=attempted,
        )


class ValidationError(AtlasError, ValueError):
    """Raised when an argument is outside its accepted domain."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}: {value!r} ({reason})", field=field, value=value)


class DependencyError(AtlasError):
    """Raised when the durable store call fails.

    The driver exception is kept as ``cause`` and chained via ``raise ... from``.
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Store operation '{operation}' failed: {cause}",
            operation=operation,
            cause=type(cause).__name__,
        )


_LOGGED_MARKER = "_atlas_logged"


def _call_context(
    signature: inspect.Signature,
    args: tuple,
    kwargs: dict,
    names: Optional[Iterable[str]],
) -> Dict[str, Any]:
    try:
        bound = signature.bind(*args, **kwargs)
    except TypeError:
        return {}
    bound.apply_defaults()
    arguments = dict(bound.arguments)
    arguments.pop("self", None)
    if names is not None:
        return {name: arguments[name] for name in names if name in arguments}
    return arguments


def logged_operation(
    operation: str,
    *,
    context: Optional[Iterable[str]] = None,
    success_level: Optional[int] = logging.DEBUG,
) -> Callable[[F], F]:
    """Decorate a public operation with log-then-propagate error handling.

    A failure is logged once, by the innermost decorated operation on the
    call stack, and then re-raised unchanged.

    Args:
        operation: Human-readable operation name used in log messages
        context: Argument names copied into the log context (default: all but self)
        success_level: Level for the completion record; None disables it

    Returns:
        Decorator preserving the wrapped callable's sync/async nature
    """
    names = tuple(context) if context is not None else None

    def decorator(func: F) -> F:
        signature = inspect.signature(func)
        logger = get_logger(func.__module__)

        def _log_failure(exc: Exception, ctx: Dict[str, Any]) -> None:
            # Only the innermost decorated operation logs a given exception
            if getattr(exc, _LOGGED_MARKER, False):
                return
            setattr(exc, _LOGGED_MARKER, True)
            details = dict(ctx)
            details["error"] = str(exc)
            details["error_type"] = type(exc).__name__
            logger.error("Error in %s", operation, extra={"context": details})

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                ctx = _call_context(signature, args, kwargs, names)
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    _log_failure(exc, ctx)
                    raise
                if success_level is not None:
                    logger.log(success_level, "%s completed", operation, extra={"context": ctx})
                return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            ctx = _call_context(signature, args, kwargs, names)
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _log_failure(exc, ctx)
                raise
            if success_level is not None:
                logger.log(success_level, "%s completed", operation, extra={"context": ctx})
            return result

        return sync_wrapper  # type: ignore[return-value]

    return decorator
