"""Reference rewriting over content value trees."""

from provisioning_engine.rewrite.codec import decode, encode, looks_encoded, verify_lengths
from provisioning_engine.rewrite.engine import (
    count_occurrences,
    from_json,
    rewrite,
    rewrite_many,
    to_json,
)
from provisioning_engine.rewrite.values import (
    EncodedComposite,
    Mapping,
    Scalar,
    Sequence,
    Value,
)

__all__ = [
    "EncodedComposite",
    "Mapping",
    "Scalar",
    "Sequence",
    "Value",
    "count_occurrences",
    "decode",
    "encode",
    "from_json",
    "looks_encoded",
    "rewrite",
    "rewrite_many",
    "to_json",
    "verify_lengths",
]
