"""Content value tree.

Template content is modelled as an immutable tagged tree so that rewriting
is a pure function: a rewrite returns a new tree and leaves the input
untouched.  Four variants exist:

* :class:`Scalar` -- a string, number, boolean or null.
* :class:`Sequence` -- an ordered list of values.
* :class:`Mapping` -- ordered key/value pairs, optionally tagged with an
  object class name.
* :class:`EncodedComposite` -- a string whose payload is itself a
  length-prefixed encoding of another value tree.

Every variant is a frozen dataclass, so equality is structural and nodes are
hashable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

ScalarType = Union[str, int, float, bool, None]
MappingKey = Union[str, int]


@dataclass(frozen=True, slots=True)
class Scalar:
    """A leaf value.

    ``literal`` keeps the original textual form of a decoded number so that
    re-encoding is byte-identical.  It does not take part in equality.
    """

    value: ScalarType = None
    literal: str | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class Sequence:
    """An ordered list of values."""

    items: tuple[Value, ...] = ()

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class Mapping:
    """Ordered key/value pairs.

    Keys are never rewritten.  ``class_name`` is set for encoded objects
    and is preserved across a rewrite.
    """

    entries: tuple[tuple[MappingKey, Value], ...] = ()
    class_name: str | None = None

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, key: MappingKey, default: Value | None = None) -> Value | None:
        for k, v in self.entries:
            if k == key:
                return v
        return default

    def keys(self) -> list[MappingKey]:
        return [k for k, _ in self.entries]


@dataclass(frozen=True, slots=True)
class EncodedComposite:
    """A string holding a length-prefixed encoding of another value tree.

    The tree is decoded on demand; ``raw`` is the exact stored text.
    """

    raw: str


Value = Union[Scalar, Sequence, Mapping, EncodedComposite]


def text(value: str) -> Scalar:
    """Shorthand for a string :class:`Scalar`."""
    return Scalar(value)


def seq(*items: Value) -> Sequence:
    """Shorthand for a :class:`Sequence` of *items*."""
    return Sequence(tuple(items))


def mapping(entries: dict[MappingKey, Value], class_name: str | None = None) -> Mapping:
    """Build a :class:`Mapping` from a dict, preserving insertion order."""
    return Mapping(tuple(entries.items()), class_name=class_name)
