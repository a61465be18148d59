"""
Handler registry

Handlers are plain async functions registered with ``api_handler``; the
presentation layer looks them up by name or path and invokes them with a
validated request body.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from core.logger import get_logger
from models.base import BaseModel

logger = get_logger(__name__)

HandlerFunc = Callable[..., Awaitable[Any]]


@dataclass
class HandlerSpec:
    name: str
    func: HandlerFunc
    body: Optional[Type[BaseModel]]
    method: str
    path: str
    tags: List[str] = field(default_factory=list)


_registry: Dict[str, HandlerSpec] = {}


def api_handler(
    body: Optional[Type[BaseModel]] = None,
    method: str = "POST",
    path: Optional[str] = None,
    tags: Optional[List[str]] = None,
):
    """Register an async handler under its function name"""

    def decorator(func: HandlerFunc) -> HandlerFunc:
        spec = HandlerSpec(
            name=func.__name__,
            func=func,
            body=body,
            method=method.upper(),
            path=path or f"/{func.__name__}",
            tags=list(tags or []),
        )
        if spec.name in _registry:
            logger.warning(f"Handler {spec.name} registered twice, replacing")
        _registry[spec.name] = spec
        return func

    return decorator


def get_handler(name: str) -> Optional[HandlerSpec]:
    return _registry.get(name)


def get_registered_handlers() -> Dict[str, HandlerSpec]:
    return dict(_registry)


async def invoke(name: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    """
    Validate ``payload`` against the handler's body model and call it

    Raises:
        KeyError: If no handler is registered under ``name``
        pydantic.ValidationError: If the payload does not fit the body model
    """
    spec = _registry.get(name)
    if spec is None:
        raise KeyError(f"Unknown handler: {name}")

    if spec.body is None:
        return await spec.func()
    return await spec.func(spec.body.model_validate(payload or {}))


# Import handler modules so their decorators run
from . import timeline  # noqa: E402,F401
