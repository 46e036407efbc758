"""Memory files (MEMORY.md / CLAUDE.md) prepended to phase prompts.

Global memory lives in ``~/.skillrunner``; project memory in the project
directory. Either file may pull in other files with ``@include: <path>``
lines, resolved relative to the including file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from skillrunner.observability.logging import get_logger

log = get_logger(__name__)

MEMORY_FILE_NAMES = ("MEMORY.md", "CLAUDE.md")
SECTION_SEPARATOR = "\n\n---\n\n"
CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 2000

_INCLUDE_PATTERN = re.compile(r"^@include:\s*(.+)$")
_ELLIPSIS = "..."


@dataclass(frozen=True)
class IncludedFile:
    path: Path
    content: str
    source: str


@dataclass(frozen=True)
class Memory:
    """Loaded memory content. Combined as project, then global, then includes."""

    global_content: str = ""
    project_content: str = ""
    includes: tuple[IncludedFile, ...] = ()

    @property
    def sources(self) -> list[str]:
        sources = []
        if self.project_content:
            sources.append("project")
        if self.global_content:
            sources.append("global")
        sources.extend(f"include:{inc.path}" for inc in self.includes)
        return sources

    @property
    def is_empty(self) -> bool:
        return not self.combined()

    @property
    def estimated_tokens(self) -> int:
        combined = self.combined()
        return (len(combined) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN

    def combined(self) -> str:
        parts = [self.project_content, self.global_content]
        parts.extend(inc.content for inc in self.includes)
        return SECTION_SEPARATOR.join(p for p in parts if p)


def truncate_at_word_boundary(content: str, limit: int) -> str:
    """Cut ``content`` to at most ``limit`` characters, ending in ``...``."""
    if len(content) <= limit:
        return content
    if limit <= len(_ELLIPSIS):
        return _ELLIPSIS[:limit]
    target = limit - len(_ELLIPSIS)
    last_space = content.rfind(" ", 0, target)
    if last_space > 0:
        return content[:last_space] + _ELLIPSIS
    return content[:target] + _ELLIPSIS


class MemoryLoader:
    """Loads global and project memory within a token budget.

    Args:
        max_tokens: Budget for the combined memory; 0 disables truncation.
        home_dir: Home directory holding ``.skillrunner/``. Defaults to
            the user's home.
    """

    def __init__(self, max_tokens: int = DEFAULT_MAX_TOKENS, home_dir: Path | None = None) -> None:
        self._max_tokens = max_tokens
        self._home_dir = home_dir if home_dir is not None else Path.home()

    def load(self, project_dir: Path | None = None) -> Memory:
        """Load memory for a project directory (the current directory by default)."""
        project_dir = project_dir if project_dir is not None else Path.cwd()
        global_path, global_content = self._first_existing(self._home_dir / ".skillrunner")
        project_path, project_content = self._first_existing(project_dir)

        includes: list[IncludedFile] = []
        if global_path is not None:
            includes.extend(self._includes(global_content, global_path.parent, "global"))
        if project_path is not None:
            includes.extend(self._includes(project_content, project_path.parent, "project"))

        memory = Memory(global_content, project_content, tuple(includes))
        if self._max_tokens > 0 and memory.estimated_tokens > self._max_tokens:
            memory = self._truncate(memory)
            log.info("memory_truncated", max_tokens=self._max_tokens)
        if not memory.is_empty:
            log.debug("memory_loaded", sources=memory.sources, tokens=memory.estimated_tokens)
        return memory

    def load_text(self, project_dir: Path | None = None) -> str:
        """Combined memory text, or an empty string."""
        return self.load(project_dir).combined()

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("memory_read_failed", path=str(path), error=str(e))
            return None

    def _first_existing(self, directory: Path) -> tuple[Path | None, str]:
        for name in MEMORY_FILE_NAMES:
            path = directory / name
            content = self._read(path)
            if content is not None:
                return path, content
        return None, ""

    def _includes(self, content: str, base_dir: Path, source: str) -> list[IncludedFile]:
        found: list[IncludedFile] = []
        seen: set[Path] = set()
        for line in content.splitlines():
            match = _INCLUDE_PATTERN.match(line.strip())
            if match is None:
                continue
            path = Path(match.group(1).strip()).expanduser()
            if not path.is_absolute():
                path = base_dir / path
            path = path.resolve()
            if path in seen:
                continue
            seen.add(path)
            included = self._read(path)
            if included is None:
                log.debug("memory_include_missing", path=str(path))
                continue
            found.append(IncludedFile(path, included, source))
        return found

    def _truncate(self, memory: Memory) -> Memory:
        # Project content is kept first; includes are dropped
        limit = self._max_tokens * CHARS_PER_TOKEN
        project = memory.project_content
        global_ = memory.global_content
        if len(project) > limit:
            return Memory("", truncate_at_word_boundary(project, limit))
        remaining = limit - len(project)
        return Memory(truncate_at_word_boundary(global_, remaining), project)
