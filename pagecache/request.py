"""Normalized, hashed cache requests built from query arguments."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Union
from urllib.parse import parse_qsl

from pagecache.sharded import map_shard_key

_MAX_TAGS = 10
# Approximate size of the request's fixed fields.
_REQUEST_STRUCT_SIZE = 144

_NULL = b"null"
_CHOICE = b"choice"

Text = Union[str, bytes]
QueryArgs = Union[Text, Mapping[Text, Text], Iterable[tuple[Text, Text]]]


def _as_bytes(value: Text | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def _pairs(query_args: QueryArgs) -> list[tuple[bytes, bytes]]:
    if isinstance(query_args, (str, bytes)):
        raw = _as_bytes(query_args)
        if raw.startswith(b"?"):
            raw = raw[1:]
        return list(parse_qsl(raw, keep_blank_values=True))
    items = query_args.items() if isinstance(query_args, Mapping) else query_args
    return [(_as_bytes(k), _as_bytes(v)) for k, v in items]


def _peek(pairs: list[tuple[bytes, bytes]], name: bytes) -> bytes:
    return next((value for key, value in pairs if key == name), b"")


@dataclass(frozen=True)
class Request:
    """A cache request: project, domain, language and choice tags.

    The key is a 64-bit hash of all fields; ``shard_key`` picks the shard.
    """

    project: bytes
    domain: bytes
    language: bytes
    tags: tuple[bytes, ...] = ()
    key: int = field(init=False, compare=False)
    shard_key: int = field(init=False, compare=False)
    _query: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "project", _as_bytes(self.project))
        object.__setattr__(self, "domain", _as_bytes(self.domain))
        object.__setattr__(self, "language", _as_bytes(self.language))
        object.__setattr__(self, "tags", tuple(_as_bytes(t) for t in self.tags))
        object.__setattr__(self, "_query", self._build_query())
        key = self._build_key()
        object.__setattr__(self, "key", key)
        object.__setattr__(self, "shard_key", map_shard_key(key))

    def _build_key(self) -> int:
        material = b"".join((self.project, self.domain, self.language, *self.tags))
        digest = hashlib.blake2b(material, digest_size=8).digest()
        return int.from_bytes(digest, "little")

    def _build_query(self) -> bytes:
        parts = [
            b"?project[id]=", self.project,
            b"&domain=", self.domain,
            b"&language=", self.language,
        ]
        depth = 0
        for tag in self.tags:
            if not tag:
                continue
            parts += [b"&choice", b"[choice]" * depth, b"[name]=", tag]
            depth += 1
        parts += [b"&choice", b"[choice]" * depth, b"=null"]
        return b"".join(parts)

    def _validate(self) -> "Request":
        if not self.project:
            raise ValueError("project is not specified")
        if not self.domain:
            raise ValueError("domain is not specified")
        if not self.language:
            raise ValueError("language is not specified")
        return self

    def weight(self) -> int:
        """Approximate memory taken by the request."""
        return (
            _REQUEST_STRUCT_SIZE
            + len(self.project)
            + len(self.domain)
            + len(self.language)
            + len(self._query)
            + len(self.tags)
            + sum(len(tag) for tag in self.tags)
        )

    def to_query(self) -> bytes:
        """The query string the backend is asked with, starting with ``?``."""
        return self._query


def new_manual_request(
    project: Text, domain: Text, language: Text, tags: Iterable[Text]
) -> Request:
    """Build and validate a request from explicit fields.

    Raises ValueError if project, domain or language is empty.
    """
    return Request(project, domain, language, tuple(tags))._validate()


def extract_tags(query_args: QueryArgs) -> list[bytes]:
    """Values of arguments whose name starts with ``choice``, skipping ``null``.

    Raises ValueError if there are more than ten of them.
    """
    tags = [
        value
        for key, value in _pairs(query_args)
        if key.startswith(_CHOICE) and value != _NULL
    ]
    if len(tags) > _MAX_TAGS:
        raise ValueError(f"too many tags: {len(tags)} (at most {_MAX_TAGS})")
    return tags


def new_request(query_args: QueryArgs) -> Request:
    """Build and validate a request from query arguments.

    ``query_args`` may be a query string, a mapping or an iterable of pairs.
    """
    pairs = _pairs(query_args)
    return Request(
        _peek(pairs, b"project[id]"),
        _peek(pairs, b"domain"),
        _peek(pairs, b"language"),
        tuple(extract_tags(pairs)),
    )._validate()