"""
Ownership checks for entities owned by one or more users
"""
from typing import Any, Callable
from common.error_handling import Forbidden

Predicate = Callable[[Any, str], bool]

def authorize(entity: Any, actor: str, predicate: Predicate, action: str = "access") -> Any:
    """Return entity if predicate(entity, actor) holds, else raise Forbidden"""
    if not predicate(entity, actor):
        kind = type(entity).__name__.lower()
        raise Forbidden(f"You are not authorized to {action} this {kind}")
    return entity
