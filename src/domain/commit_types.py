import re
from typing import Dict, Tuple

DEFAULT_COMMIT_TYPE = "other"

# Matched in order against the lowercase, trimmed commit message.
COMMIT_TYPES: Tuple[str, ...] = (
    "feat",
    "fix",
    "docs",
    "style",
    "refactor",
    "perf",
    "test",
    "build",
    "ci",
    "chore",
    "revert",
)

COMMIT_TYPE_COLORS: Dict[str, str] = {
    "feat": "#FFD166",
    "fix": "#EF476F",
    "docs": "#118AB2",
    "style": "#F4A261",
    "refactor": "#06D6A0",
    "perf": "#9B5DE5",
    "test": "#90BE6D",
    "build": "#577590",
    "ci": "#43AA8B",
    "chore": "#ADB5BD",
    "revert": "#F94144",
    DEFAULT_COMMIT_TYPE: "#E5E5E5",
}

# Prefixes matched without a delimiter, as the visualization client does.
BARE_PREFIX_TYPES = frozenset({"feat", "fix", "docs"})

# Other types need a delimiter right after the prefix: "ci(deps)", "ci!", "ci:", "ci ...".
_TYPE_DELIMITER = re.compile(r"[(!:\s]|$")


def classify_commit(message: str) -> str:
    """Returns the conventional-commit type a message starts with, or 'other'."""
    normalized = (message or "").strip().lower()
    for commit_type in COMMIT_TYPES:
        if not normalized.startswith(commit_type):
            continue
        if commit_type in BARE_PREFIX_TYPES or _TYPE_DELIMITER.match(normalized, len(commit_type)):
            return commit_type
    return DEFAULT_COMMIT_TYPE


def commit_color(message: str) -> str:
    return COMMIT_TYPE_COLORS[classify_commit(message)]
