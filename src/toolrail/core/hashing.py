"""Canonical JSON, argument fingerprints, similarity and token estimates.

Fingerprints and similarity look at *every* argument value: strings,
booleans, numbers, nulls and nested keys. Two calls that differ only in
a boolean flag never compare as similar.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from itertools import pairwise
from typing import Any

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?()\[\]{}'\"]+")


def canonical_json(obj: Any) -> str:
    """Serialize *obj* with sorted keys and no insignificant whitespace."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(args: Mapping[str, Any] | None) -> str:
    """Order-independent 16-hex-char fingerprint of a call's arguments."""
    return sha256_hex(canonical_json(dict(args or {})))[:16]


def _words(text: str) -> list[str]:
    return [tok for tok in _TOKEN_SPLIT.split(text.lower()) if tok]


def tokenize(text: str) -> set[str]:
    """Lowercase word tokens of *text*, split on whitespace and punctuation."""
    return set(_words(text))


def shingles(text: str) -> set[str]:
    """Word tokens of *text* plus every adjacent word pair, so order counts."""
    words = _words(text)
    return set(words) | {f"{a} {b}" for a, b in pairwise(words)}


def _flatten(value: Any, path: str, out: dict[str, Any]) -> None:
    if isinstance(value, Mapping):
        if not value:
            out[path] = {}
        for key, item in value.items():
            _flatten(item, f"{path}.{key}" if path else str(key), out)
    elif isinstance(value, (list, tuple)):
        if not value:
            out[path] = []
        for idx, item in enumerate(value):
            _flatten(item, f"{path}[{idx}]", out)
    else:
        out[path] = value


def flatten_args(args: Mapping[str, Any]) -> dict[str, Any]:
    """Map every leaf of *args* to its dotted path (``a.b[0]``)."""
    out: dict[str, Any] = {}
    _flatten(args, "", out)
    return out


def _same_leaf(a: Any, b: Any) -> bool:
    # True == 1 in Python; the type check keeps them apart
    return type(a) is type(b) and a == b


def args_similarity(
    args1: Mapping[str, Any] | None,
    args2: Mapping[str, Any] | None,
) -> float:
    """Score how alike two argument sets are, between 0.0 and 1.0.

    * identical fingerprints score 1.0;
    * a different set of leaf paths scores 0.0;
    * any differing non-string leaf (bool, number, null, empty
      container) scores 0.0;
    * otherwise the score is the Jaccard overlap of the string leaves'
      words and adjacent word pairs, each tagged with its path so that
      words never match across different fields.

    Known limits: case and punctuation are ignored, so ``"refunds?"``
    matches ``"refunds"``. Repeated words count once. A reordered phrase
    keeps its words but loses most pairs, so it scores well below a
    typical threshold without reaching 0.0. Numbers are compared by type
    as well as value, so ``1`` and ``1.0`` never match. List items are
    compared by position. Synonyms are not recognised.
    """
    if args1 is None or args2 is None:
        return 0.0
    if fingerprint(args1) == fingerprint(args2):
        return 1.0

    flat1 = flatten_args(args1)
    flat2 = flatten_args(args2)
    if flat1.keys() != flat2.keys():
        return 0.0

    tokens1: set[str] = set()
    tokens2: set[str] = set()
    for path, v1 in flat1.items():
        v2 = flat2[path]
        if isinstance(v1, str) and isinstance(v2, str):
            tokens1.update(f"{path}={tok}" for tok in shingles(v1))
            tokens2.update(f"{path}={tok}" for tok in shingles(v2))
        elif not _same_leaf(v1, v2):
            return 0.0

    union = tokens1 | tokens2
    if not union:
        return 0.0
    return len(tokens1 & tokens2) / len(union)


def estimate_tokens(text: str) -> int:
    """Rough token count: about four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def payload_size(payload: Any) -> tuple[int, int]:
    """Return ``(chars, estimated_tokens)`` of *payload* serialized as JSON."""
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return len(text), estimate_tokens(text)
