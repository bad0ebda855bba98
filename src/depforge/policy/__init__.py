"""Per-dependency test policy overrides."""

from depforge.policy.store import (
    DEFAULT_SKIP_REASON,
    PolicyEntry,
    PolicyStore,
    load_policy,
    parse_bool,
    parse_policy_lines,
)

__all__ = [
    "DEFAULT_SKIP_REASON",
    "PolicyEntry",
    "PolicyStore",
    "load_policy",
    "parse_bool",
    "parse_policy_lines",
]
