"""
Provider group primitives.

A ProviderGroup bundles the tool table of one introspection source together
with the predicate that decides whether it is active in this process.
"""

import functools
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List

from common.logging import get_logger
from ..capabilities import Capability
from ..tool_registry import ToolDefinition

logger = get_logger(__name__)

ActivationPredicate = Callable[[FrozenSet[Capability]], bool]


def always(capabilities: FrozenSet[Capability]) -> bool:
    """Activation predicate for groups that apply to every host."""
    return True


def requires(capability: Capability) -> ActivationPredicate:
    """Activation predicate that holds when the given capability was detected."""

    def predicate(capabilities: FrozenSet[Capability]) -> bool:
        return capability in capabilities

    predicate.__name__ = f"requires_{capability.value}"
    return predicate


@dataclass
class ProviderGroup:
    """Named bundle of tools sharing an activation predicate."""

    name: str
    tools: List[ToolDefinition]
    activation_predicate: ActivationPredicate = always
    description: str = ""


def best_effort(action: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Wrap an introspection handler so a failure becomes a descriptive value.

    The wrapped handler returns ``{"error": "<action> failed: <message>"}``
    instead of raising. The signature is preserved so descriptor extraction
    still sees the real parameters.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    return _failure_value(action, func, e)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                return _failure_value(action, func, e)

        return wrapper

    return decorator


def _failure_value(action: str, func: Callable[..., Any], error: Exception) -> Dict[str, str]:
    logger.warning(
        event="introspection_failed",
        action=action,
        handler=getattr(func, "__qualname__", repr(func)),
        error=str(error),
        error_type=type(error).__name__,
    )
    return {"error": f"{action} failed: {str(error) or type(error).__name__}"}
