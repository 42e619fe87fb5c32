from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any, Callable, TypeVar

from fastapi import Depends, FastAPI

T = TypeVar("T")


@lru_cache(maxsize=None)
def _provider(tp: Any) -> Callable[[], Any]:
    def provide() -> Any:
        raise RuntimeError(f"no instance of {tp!r} is bound to this app")

    provide.__name__ = f"provide_{getattr(tp, '__name__', 'dependency')}"
    return provide


def bind(app: FastAPI, tp: type[T], value: T) -> None:
    """Make ``Injected[tp]`` resolve to ``value`` in ``app``'s routes."""
    app.dependency_overrides[_provider(tp)] = lambda: value


class Injected:
    def __class_getitem__(cls, tp: Any) -> Any:
        return Annotated[tp, Depends(_provider(tp))]
