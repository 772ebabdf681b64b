"""Glob-based ignore rules deciding which paths the engine ever tracks.

Rules use gitignore syntax and come from three layers, applied in order so
that later layers win (``!pattern`` re-includes a path):

1. Built-in defaults: the bookkeeping directory, VCS metadata, build and IDE
   output, caches, and generated-data extensions.
2. ``exclude_from_checking`` from the workspace configuration.
3. The workspace ``.snapshotignore`` file.

Each line is compiled into an ``IgnoreRule`` that records its structure
(segments, anchoring, directory-only, wildcards) next to a pathspec matcher,
so rules can be inspected and tested without touching the filesystem.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pathspec

from editguard.config.constants import IGNORE_FILE_NAME, STATE_DIR_NAME
from editguard.config.schema import SnapshotConfig
from editguard.core.workspace import Workspace
from editguard.utils.logger import get_logger

logger = get_logger("ignore")

DEFAULT_PATTERNS = [
    f"{STATE_DIR_NAME}/",
    ".git/",
    ".svn/",
    ".hg/",
    "node_modules/",
    "__pycache__/",
    ".venv/",
    "venv/",
    ".idea/",
    ".vscode/",
    "dist/",
    "build/",
    ".pytest_cache/",
    ".mypy_cache/",
    "*.pyc",
    ".DS_Store",
    "*.swp",
]

GENERATED_DATA_PATTERNS = [
    "*.csv",
    "*.tsv",
    "*.jsonl",
    "*.parquet",
    "*.sqlite",
    "*.db",
    "*.pkl",
]

JSON_PATTERN = "*.json"

DEFAULT_IGNORE_FILE_TEMPLATE = f"""# {IGNORE_FILE_NAME}
# Paths matching these patterns are never hashed, checkpointed or validated.
# Syntax follows .gitignore: `dir/` for directories, `*.ext` for extensions,
# a leading `/` anchors to the workspace root, `!pattern` re-includes.

# Output written by scripts the agent runs
*.out
coverage/

# Re-include hand-edited manifests hidden by the JSON default
!package.json
!tsconfig.json
"""


@dataclass(frozen=True)
class IgnoreRule:
    """One compiled ignore line."""

    pattern: str
    source: str
    negated: bool
    directory_only: bool
    anchored: bool
    segments: tuple[str, ...]
    has_wildcard: bool
    has_double_star: bool
    spec: pathspec.PathSpec = field(compare=False, repr=False)

    def matches(self, relpath: str) -> bool:
        """Whether the pattern body matches, ignoring negation."""
        return self.spec.match_file(relpath)


def compile_rule(line: str, source: str) -> IgnoreRule | None:
    """Compile one rules-file line; comments and blank lines yield None."""
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    negated = text.startswith("!")
    body = text[1:] if negated else text
    if not body:
        return None
    directory_only = body.endswith("/")
    stripped = body.strip("/")
    # A slash anywhere but the end anchors the pattern to the root
    anchored = "/" in body.rstrip("/")
    segments = tuple(s for s in stripped.split("/") if s)
    return IgnoreRule(
        pattern=text,
        source=source,
        negated=negated,
        directory_only=directory_only,
        anchored=anchored,
        segments=segments,
        has_wildcard=any(ch in body for ch in "*?["),
        has_double_star="**" in segments,
        spec=pathspec.PathSpec.from_lines("gitwildmatch", [body]),
    )


class IgnoreMatcher:
    """Decides whether a workspace path is invisible to the integrity machinery."""

    def __init__(self, workspace: Workspace, config: SnapshotConfig | None = None):
        self.workspace = workspace
        self.config = config or SnapshotConfig()
        self.rules: list[IgnoreRule] = []
        self._spec: pathspec.PathSpec | None = None
        self._file_loaded = False
        self._file_error: str | None = None
        self.reload()

    def _builtin_lines(self) -> list[tuple[str, str]]:
        lines = [(p, "default") for p in DEFAULT_PATTERNS]
        lines += [(p, "generated-data") for p in GENERATED_DATA_PATTERNS]
        if self.config.ignore_json_files:
            lines.append((JSON_PATTERN, "generated-data"))
        lines += [(p, "config") for p in self.config.exclude_from_checking]
        return lines

    def _file_lines(self) -> list[tuple[str, str]]:
        self._file_loaded = False
        self._file_error = None
        path = self.workspace.ignore_file
        if not path.exists():
            return []
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            self._file_error = str(e)
            logger.warning(
                "Failed to read ignore file, using defaults",
                path=str(path),
                error=str(e),
            )
            return []
        self._file_loaded = True
        return [(line, IGNORE_FILE_NAME) for line in content.splitlines()]

    def reload(self, config: SnapshotConfig | None = None) -> None:
        """Recompile every rule layer, optionally with a new configuration."""
        if config is not None:
            self.config = config
        rules = []
        for line, source in self._builtin_lines() + self._file_lines():
            rule = compile_rule(line, source)
            if rule is not None:
                rules.append(rule)
        self.rules = rules
        self._spec = pathspec.PathSpec.from_lines(
            "gitwildmatch", [r.pattern for r in rules]
        )
        logger.debug(
            "Ignore rules loaded",
            total=len(rules),
            from_file=sum(1 for r in rules if r.source == IGNORE_FILE_NAME),
        )

    def _match_path(self, path: str) -> str:
        return self.workspace.relpath(path).lstrip("/")

    def is_ignored(self, path: str) -> bool:
        relpath = self._match_path(path)
        if not relpath:
            return False
        return bool(self._spec and self._spec.match_file(relpath))

    def is_ignored_dir(self, relpath: str) -> bool:
        # relpath() drops the trailing slash that directory-only rules need
        relpath = self._match_path(relpath).rstrip("/")
        if not relpath:
            return False
        return bool(self._spec and self._spec.match_file(relpath + "/"))

    def filter(self, paths: list[str]) -> list[str]:
        """Return the paths that are not ignored, in their original order and spelling."""
        return [p for p in paths if not self.is_ignored(p)]

    def explain(self, path: str) -> IgnoreRule | None:
        """Return the last rule that decided the path, if any rule matched."""
        relpath = self._match_path(path)
        for rule in reversed(self.rules):
            if rule.matches(relpath):
                return rule
        return None

    def create_default_file(self) -> bool:
        """Write a commented template ignore file unless one already exists."""
        path = self.workspace.ignore_file
        if path.exists():
            return False
        path.write_text(DEFAULT_IGNORE_FILE_TEMPLATE, encoding="utf-8")
        logger.info("Created default ignore file", path=str(path))
        self.reload()
        return True

    def info(self) -> dict[str, Any]:
        path = self.workspace.ignore_file
        return {
            "path": str(path),
            "exists": path.exists(),
            "loaded": self._file_loaded,
            "error": self._file_error,
            "ignore_json_files": self.config.ignore_json_files,
            "patterns": [r.pattern for r in self.rules],
            "user_patterns": [
                r.pattern for r in self.rules if r.source == IGNORE_FILE_NAME
            ],
        }
