"""Per-dependency test policy overrides parsed from an INI-like config file.

File format::

    # comment
    [Some::Module]
    skip_load = yes
    skip_test = true
    reason = needs a running database
    env.DB_HOST = localhost
    test_command = prove -lr t/

Sections run until the next header or end of file. Unknown keys are ignored so
older harness versions keep reading newer files.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from depforge.errors import InputError

LOGGER = logging.getLogger(__name__)

TRUE_VALUES: frozenset[str] = frozenset({"yes", "true", "1"})
DEFAULT_SKIP_REASON = "skipped"

_SECTION_RE = re.compile(r"^\[(?P<name>.+)\]$")
_KEY_VALUE_RE = re.compile(r"^(?P<key>[^=\s]+)\s*=\s*(?P<value>.*)$")
_ENV_KEY_RE = re.compile(r"^env\.(?P<var>\w+)$")


@dataclass(slots=True)
class PolicyEntry:
    """Override settings for one dependency."""

    skip_load: bool = False
    skip_test: bool = False
    reason: str = ""
    env_overrides: dict[str, str] = field(default_factory=dict)
    test_command: str | None = None


def parse_bool(value: str) -> bool:
    """Interpret `yes`/`true`/`1` (any case) as True, anything else as False."""

    return value.strip().lower() in TRUE_VALUES


def parse_policy_lines(lines: Iterable[str]) -> dict[str, PolicyEntry]:
    """Parse policy config lines into entries keyed by dependency name."""

    entries: dict[str, PolicyEntry] = {}
    current: PolicyEntry | None = None
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        section = _SECTION_RE.match(line)
        if section is not None:
            name = section.group("name").strip()
            current = PolicyEntry()
            entries[name] = current
            continue

        if current is None:
            continue
        pair = _KEY_VALUE_RE.match(line)
        if pair is None:
            continue
        key = pair.group("key")
        value = pair.group("value").strip()
        if not value:
            continue

        if key == "skip_load":
            current.skip_load = parse_bool(value)
        elif key == "skip_test":
            current.skip_test = parse_bool(value)
        elif key == "reason":
            current.reason = value
        elif key == "test_command":
            current.test_command = value
        else:
            env_key = _ENV_KEY_RE.match(key)
            if env_key is not None:
                current.env_overrides[env_key.group("var")] = value
    return entries


class PolicyStore:
    """Read-only lookup of policy entries; unknown names get defaults."""

    def __init__(self, entries: Mapping[str, PolicyEntry] | None = None, source: Path | None = None) -> None:
        self._entries: dict[str, PolicyEntry] = dict(entries or {})
        self.source = source

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def entry(self, name: str) -> PolicyEntry | None:
        return self._entries.get(name)

    def should_skip_load(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry.skip_load if entry else False

    def should_skip_test(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry.skip_test if entry else False

    def reason(self, name: str) -> str:
        """Return the configured reason, "skipped" for a configured entry without one, else ""."""

        entry = self._entries.get(name)
        if entry is None:
            return ""
        return entry.reason or DEFAULT_SKIP_REASON

    def env_overrides(self, name: str) -> dict[str, str]:
        entry = self._entries.get(name)
        return dict(entry.env_overrides) if entry else {}

    def test_command(self, name: str) -> str | None:
        entry = self._entries.get(name)
        return entry.test_command if entry else None

    def skip_load_names(self) -> list[str]:
        return [name for name, entry in self._entries.items() if entry.skip_load]

    def skip_test_names(self) -> list[str]:
        return [name for name, entry in self._entries.items() if entry.skip_test]


def load_policy(path: Path, logger: logging.Logger | None = None) -> PolicyStore:
    """Load the policy file; a missing file yields an empty store."""

    effective_logger = logger or LOGGER
    if not path.is_file():
        effective_logger.info("policy.missing path=%s; using defaults for every dependency", path)
        return PolicyStore(source=None)
    try:
        with path.open("r", encoding="utf-8") as handle:
            entries = parse_policy_lines(handle)
    except UnicodeDecodeError as exc:
        raise InputError(f"Policy file is not valid UTF-8: {path} ({exc.reason} at byte {exc.start})") from exc
    effective_logger.info(
        "policy.loaded path=%s entries=%s skip_load=%s skip_test=%s",
        path,
        len(entries),
        sum(1 for entry in entries.values() if entry.skip_load),
        sum(1 for entry in entries.values() if entry.skip_test),
    )
    return PolicyStore(entries, source=path)
