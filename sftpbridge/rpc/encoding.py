"""Module with the MessagePack encoding of RPC messages."""

import builtins
from collections import deque
import dataclasses
from enum import Enum
import typing
from typing import Any, Dict, Iterable, List, Set

import msgpack

# Keys that mark encoded objects within MessagePack maps
DATACLASS_KEY = "__dataclass__"
EXCEPTION_KEY = "__exception__"


class Encoding:
    """
    Conversion of call arguments and results to and from MessagePack.

    Besides the types that MessagePack supports natively, the encoding handles:

    * Registered dataclasses, which are recreated as the same type. Registering a
    dataclass also registers the dataclasses its fields refer to.
    * Exceptions. Registered and builtin exception types are recreated as the same type,
    anything else as a plain Exception with the same arguments.
    * Enum members, which are encoded as their value.

    Tuples become lists on the way through.
    """

    def __init__(self, *dataclass_types: Any, exceptions: Iterable[type] = ()):
        """Instantiate an encoding that knows about the given types."""
        self._dataclasses: Dict[str, type] = {}
        self._exceptions: Dict[str, type] = {}

        for dataclass_type in dataclass_types:
            self.register_dataclasses(dataclass_type)

        for exception_type in exceptions:
            self.register_exception(exception_type)

    def register_dataclasses(self, annotation: Any) -> None:
        """
        Register every dataclass reachable from a type annotation.

        The annotation may be a dataclass itself or a construct like List[T],
        Optional[T] or Tuple[T, U]. Field types of dataclasses are followed as well.
        """
        for dataclass_type in find_dataclasses(annotation):
            self._dataclasses[dataclass_type.__qualname__] = dataclass_type

    def register_exception(self, exception_type: type) -> None:
        """Register an exception type to recreate faithfully."""
        self._exceptions[exception_type.__qualname__] = exception_type

    def pack(self, obj: Any) -> bytes:
        """Encode an object into MessagePack bytes."""
        return msgpack.packb(obj, default=self.encode_obj)

    def unpack(self, data: bytes) -> Any:
        """Decode an object from MessagePack bytes."""
        return msgpack.unpackb(data, object_hook=self.decode_obj)

    def encode_obj(self, obj: Any) -> Any:
        """Turn an object that MessagePack can't handle into one that it can."""
        if isinstance(obj, BaseException):
            return {EXCEPTION_KEY: type(obj).__qualname__, "args": list(obj.args)}
        elif isinstance(obj, Enum):
            return obj.value
        elif type(obj).__qualname__ in self._dataclasses:
            values = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
            return {DATACLASS_KEY: type(obj).__qualname__, "fields": values}

        raise ValueError(f"cannot encode {type(obj).__name__} object {obj!r}")

    def decode_obj(self, obj: Dict[str, Any]) -> Any:
        """Recreate the object that a map was encoded from, if any."""
        if EXCEPTION_KEY in obj:
            return self._decode_exception(obj[EXCEPTION_KEY], obj.get("args", []))
        elif DATACLASS_KEY in obj:
            return self._decode_dataclass(obj[DATACLASS_KEY], obj.get("fields", {}))

        return obj

    def _decode_exception(self, name: str, args: List[Any]) -> BaseException:
        exception_type = self._exceptions.get(name, getattr(builtins, name, None))

        if isinstance(exception_type, type) and issubclass(
            exception_type, BaseException
        ):
            return exception_type(*args)

        return Exception(*args)

    def _decode_dataclass(self, name: str, values: Dict[str, Any]) -> Any:
        dataclass_type = self._dataclasses.get(name)

        if dataclass_type is None:
            raise TypeError(f"cannot decode unregistered dataclass {name}")

        try:
            return dataclass_type(**values)
        except (TypeError, ValueError) as e:
            raise TypeError(f"cannot decode {name}: {e}")


def find_dataclasses(annotation: Any) -> List[type]:
    """Find the dataclasses used in a type annotation, including nested ones."""
    pending = deque([annotation])
    seen: Set[Any] = set()
    found: List[type] = []

    while pending:
        current = pending.popleft()

        if current is Ellipsis or current in seen:
            continue

        seen.add(current)

        if dataclasses.is_dataclass(current) and isinstance(current, type):
            found.append(current)
            pending.extend(typing.get_type_hints(current).values())
        else:
            pending.extend(typing.get_args(current))

    return found
