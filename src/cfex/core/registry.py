import collections
import dataclasses
import functools
from abc import ABCMeta
from typing import Any, Callable, ClassVar, Generic, Hashable, TypeVar, cast

_R = TypeVar("_R", bound="Registrant")


class Registry(ABCMeta):
    """Gives each direct :class:`Registrant` subclass its own registry."""

    def __init__(
        self,
        name: str,
        bases: tuple[type, ...],
        attrs: dict[str, Any],
    ):
        super().__init__(name, bases, attrs)

        if name == "Registrant":
            return

        if Registrant in bases:
            self.registry: dict[str, type[Any]] = {}


class Registrant(metaclass=Registry):
    """Base for classes that register themselves by name (stages, analyses)."""

    registrant_name: ClassVar[str]
    """Lookup key; the class name when unset."""

    registry: ClassVar[dict[str, type[Any]]] = {}
    """Lower-cased name -> class, shared by one hierarchy."""

    def __init_subclass__(cls):
        # walk up to the hierarchy roots, the classes deriving from Registrant directly
        visited = set()
        to_visit = list(cls.__bases__)
        while to_visit:
            base = to_visit.pop()
            if base in visited:
                continue
            visited.add(base)
            if Registrant in base.__bases__:
                base.register(cls)
            else:
                to_visit.extend(base.__bases__)

    @staticmethod
    def keyof(kls: type) -> str:
        return getattr(kls, "registrant_name", kls.__name__)

    @classmethod
    def normalize_key(cls, key: str) -> str:
        return key.lower()

    @classmethod
    def register(cls, alt: type[Any]):
        """Add *alt* to this hierarchy's registry."""
        if alt is cls and "registry" in cls.__dict__:
            return
        cls.registry[cls.normalize_key(cls.keyof(alt))] = alt

    @classmethod
    def get(cls, name: str) -> _R:  # type: ignore
        """Registered class called *name* (case-insensitive); KeyError when unknown."""
        return cast(_R, cls.registry[cls.normalize_key(name)])

    @classmethod
    def all(cls) -> list[type[Any]]:
        """Registered classes that are not abstract."""
        return [
            sub
            for sub in cls.registry.values()
            if not getattr(sub, "__abstractmethods__", False)
        ]


E = TypeVar("E", bound=Hashable)


@dataclasses.dataclass
class EventEmitter(Generic[E]):
    _listeners: collections.defaultdict[E, set[Callable]] = dataclasses.field(
        default_factory=lambda: collections.defaultdict(set), init=False
    )

    def on(self, event: E, handler: Callable | None = None):
        """Subscribe *handler* to *event*; without a handler, act as a decorator."""
        if handler:
            self._listeners[event].add(handler)
            return handler

        @functools.wraps(self.on)
        def decorator(func):
            self.on(event, func)
            return func

        return decorator

    def emit(self, event: E, *args, **kwargs):
        for handler in list(self._listeners[event]):
            handler(*args, **kwargs)
