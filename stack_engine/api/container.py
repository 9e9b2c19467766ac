#stack_engine/api/container.py
from typing import Optional

from stack_engine.container import StackContainer, build_container


# Singleton, built on first request
_container: Optional[StackContainer] = None


def get_container() -> StackContainer:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[StackContainer]) -> None:
    """Install an already built container (runners, tests)."""
    global _container
    _container = container
