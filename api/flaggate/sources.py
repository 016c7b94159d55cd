"""Concrete flag sources.

A source only has to provide ``fetch()``, returning the raw definitions
document (a mapping of flag name to definition, or a list of definitions).
The snapshot manager runs ``fetch`` on a worker thread with a timeout, so a
source may block on disk or network I/O.
"""
import copy
import json
from typing import Any, List, Mapping, Optional, Tuple

import requests

from flaggate.exceptions import ReloadError, ReloadErrorKind

DEFAULT_SECTION = "FeatureManagement"


class _JsonObject(dict):
    duplicates: Tuple[str, ...] = ()


def _keep_duplicates(pairs: List[Tuple[str, Any]]) -> _JsonObject:
    obj = _JsonObject()
    duplicates = []
    for key, value in pairs:
        if key in obj:
            duplicates.append(key)
        obj[key] = value
    if duplicates:
        obj.duplicates = tuple(duplicates)
    return obj


def _reject_nested_duplicates(value: Any):
    if isinstance(value, dict):
        if getattr(value, "duplicates", ()):
            raise ReloadError(ReloadErrorKind.MALFORMED, f"key {value.duplicates[0]!r} appears more than once in a definition")
        for item in value.values():
            _reject_nested_duplicates(item)
    elif isinstance(value, list):
        for item in value:
            _reject_nested_duplicates(item)


def select_section(document: Any, section: Optional[str]) -> Any:
    if not section:
        return document
    if not isinstance(document, Mapping) or section not in document:
        raise ReloadError(ReloadErrorKind.MALFORMED, f"section {section!r} not found")
    return document[section]


def parse_document(text: str, section: Optional[str], origin: str) -> Any:
    """Parse a JSON definitions document and pick out its flag section.

    Only the flag section is checked for repeated keys: a flag name given
    twice is DUPLICATE_NAME, a key repeated inside one definition is
    MALFORMED, and the rest of the document is left alone.
    """
    try:
        document = json.loads(text, object_pairs_hook=_keep_duplicates)
    except json.JSONDecodeError as exc:
        raise ReloadError(ReloadErrorKind.MALFORMED, f"{origin} is not valid JSON: {exc}") from exc
    flags = select_section(document, section)
    if getattr(flags, "duplicates", ()):
        name = flags.duplicates[0]
        raise ReloadError(ReloadErrorKind.DUPLICATE_NAME, f"flag {name!r} appears more than once in {origin}", flag=name)
    if isinstance(flags, dict):
        for body in flags.values():
            _reject_nested_duplicates(body)
    else:
        _reject_nested_duplicates(flags)
    return flags


class StaticSource:
    def __init__(self, payload: Any):
        self.payload = payload

    def fetch(self) -> Any:
        return copy.deepcopy(self.payload)

    def __repr__(self) -> str:
        return "StaticSource()"


class JsonFileSource:
    """Reads flags from a JSON settings file, e.g. ``appsettings.json``."""

    def __init__(self, path: str, section: Optional[str] = DEFAULT_SECTION, encoding: str = "utf-8"):
        self.path = path
        self.section = section
        self.encoding = encoding

    def fetch(self) -> Any:
        with open(self.path, encoding=self.encoding) as fh:
            text = fh.read()
        return parse_document(text, self.section, self.path)

    def __repr__(self) -> str:
        return f"JsonFileSource({self.path!r})"


class HttpSource:
    """Pulls the definitions document from a remote config endpoint."""

    def __init__(self, url: str, section: Optional[str] = None, timeout: float = 2.0, session: Optional[requests.Session] = None):
        self.url = url
        self.section = section
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self) -> Any:
        r = self._session.get(self.url, timeout=self.timeout)
        r.raise_for_status()
        return parse_document(r.text, self.section, self.url)

    def close(self):
        self._session.close()

    def __repr__(self) -> str:
        return f"HttpSource({self.url!r})"
