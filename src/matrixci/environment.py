# environment.py
from __future__ import annotations

import os
import re
from typing import Dict, Iterator, Mapping, Optional

from .errors import ConfigError

# ${NAME} reference; `$${` escapes a literal `${`.
_REF = re.compile(r"\$\$\{|\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class Environment(Mapping[str, str]):
    """
    Immutable name -> value mapping handed to steps.

    Layers are applied with `layer()` (declared values, with `${NAME}`
    substitution) or `merged()` (literal runtime values). Both return a new
    Environment; an existing one is never modified, so two job instances can
    never observe each other's variables.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = {str(k): str(v) for k, v in (data or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Environment({len(self._data)} vars)"

    def layer(self, declared: Mapping[str, str], *, source: str | None = None) -> "Environment":
        """Resolve `declared` on top of this environment."""
        return resolve(declared, base=self, source=source)

    def merged(self, values: Mapping[str, str]) -> "Environment":
        """Add literal values (no substitution)."""
        data = dict(self._data)
        data.update({str(k): str(v) for k, v in values.items()})
        return Environment(data)

    def to_dict(self) -> Dict[str, str]:
        """A fresh, mutable copy suitable for `subprocess` calls."""
        return dict(self._data)


def substitute(value: str, scope: Mapping[str, str], *, name: str = "", source: str | None = None) -> str:
    """Replace `${NAME}` references in `value` with entries from `scope`."""

    def repl(m: re.Match) -> str:
        if m.group(0) == "$${":
            return "${"
        ref = m.group(1)
        if ref not in scope:
            where = f" in {name!r}" if name else ""
            raise ConfigError(f"undefined variable ${{{ref}}}{where}", source=source)
        return scope[ref]

    return _REF.sub(repl, value)


def resolve(
    declared: Mapping[str, str],
    *,
    base: Optional[Mapping[str, str]] = None,
    source: str | None = None,
) -> Environment:
    """
    Merge `declared` over `base` (process environment when omitted).

    Declared entries are resolved in declaration order, so a later entry may
    reference an earlier one. Declared values win on key collision.
    """
    data: Dict[str, str] = dict(os.environ if base is None else base)
    for key, raw in declared.items():
        data[str(key)] = substitute(str(raw), data, name=str(key), source=source)
    return Environment(data)
