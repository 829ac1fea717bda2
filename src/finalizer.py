"""
Finalizer helpers.

Works on any object exposing a deletion timestamp and a finalizer tuple, and
returns new values instead of mutating. Persisting the result is up to the
caller.
"""

from datetime import datetime
from typing import Optional, Protocol, Tuple, TypeVar

FINALIZER_NAME = "finalizer.kkohtaka.org"


class Finalizable(Protocol):
    @property
    def deletion_timestamp(self) -> Optional[datetime]: ...

    @property
    def finalizers(self) -> Tuple[str, ...]: ...

    def with_finalizers(self, finalizers: Tuple[str, ...]): ...


T = TypeVar("T", bound=Finalizable)


def is_deleting(obj: Finalizable) -> bool:
    """Return True if deletion of the object has been requested."""
    return obj.deletion_timestamp is not None


def has_finalizer(obj: Finalizable, finalizer: str = FINALIZER_NAME) -> bool:
    """Return True if the object carries the finalizer."""
    return finalizer in obj.finalizers


def set_finalizer(obj: T, finalizer: str = FINALIZER_NAME) -> T:
    """Return the object with the finalizer appended (unchanged if present)."""
    if has_finalizer(obj, finalizer):
        return obj
    return obj.with_finalizers(tuple(obj.finalizers) + (finalizer,))


def remove_finalizer(obj: T, finalizer: str = FINALIZER_NAME) -> T:
    """Return the object without the first matching finalizer."""
    finalizers = tuple(obj.finalizers)
    for i, name in enumerate(finalizers):
        if name == finalizer:
            return obj.with_finalizers(finalizers[:i] + finalizers[i + 1 :])
    return obj
