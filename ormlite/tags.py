"""Parser for the per-field ``ormlite`` configuration string."""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional, Tuple

TAG_NAME = "ormlite"
OMIT = "-"

_TOKEN_SEPARATOR = ","
_VALUE_SEPARATOR = "="
# Settings whose value itself contains "=" use ":" between key and value,
# e.g. ``condition:kind=1``.
_NESTED_SEPARATOR = ":"


class TagSettings(Mapping[str, str]):
    """Parsed ``key`` / ``key=value`` tokens of a field tag.

    A key present without a value maps to the key itself, so
    ``lookup("primary")`` returns ``"primary"`` for the tag ``"primary"`` and
    an empty string when the key is absent.
    """

    __slots__ = ("_raw", "_settings")

    def __init__(self, raw: str, settings: Dict[str, str]):
        self._raw = raw
        self._settings = settings

    @property
    def raw(self) -> str:
        return self._raw

    @property
    def omitted(self) -> bool:
        return self._raw.strip() == OMIT

    def lookup(self, key: str) -> str:
        return self._settings.get(key, "")

    def has(self, key: str) -> bool:
        return key in self._settings

    def __getitem__(self, key: str) -> str:
        return self._settings[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._settings)

    def __len__(self) -> int:
        return len(self._settings)

    def __repr__(self) -> str:
        return f"TagSettings({self._raw!r})"


def _split_token(token: str) -> Tuple[str, Optional[str]]:
    eq = token.find(_VALUE_SEPARATOR)
    colon = token.find(_NESTED_SEPARATOR)
    if colon != -1 and (eq == -1 or colon < eq):
        return token[:colon].strip(), token[colon + 1 :].strip()
    if eq != -1:
        return token[:eq].strip(), token[eq + 1 :].strip()
    return token.strip(), None


def parse_tag(raw: Optional[str]) -> TagSettings:
    """Decode a comma separated tag into its settings.

    The first occurrence of a key wins; empty tokens are ignored.
    """
    text = raw or ""
    settings: Dict[str, str] = {}
    if text.strip() == OMIT:
        return TagSettings(text, settings)
    for token in text.split(_TOKEN_SEPARATOR):
        if not token.strip():
            continue
        key, value = _split_token(token)
        if not key or key in settings:
            continue
        settings[key] = key if value is None else value
    return TagSettings(text, settings)


def lookup_setting(raw: Optional[str], key: str) -> str:
    return parse_tag(raw).lookup(key)


def split_condition(condition: str) -> Tuple[str, str]:
    """Split a static ``field=value`` junction condition."""
    if not condition:
        return "", ""
    field, sep, value = condition.partition(_VALUE_SEPARATOR)
    if not sep:
        return field.strip(), ""
    return field.strip(), value.strip()
