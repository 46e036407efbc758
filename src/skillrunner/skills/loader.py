"""Skill loading from YAML files and the in-process skill registry."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import pydantic
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from skillrunner.errors import SkillLoadError, SkillNotFoundError, ValidationError
from skillrunner.observability.logging import get_logger
from skillrunner.skills.models import Skill
from skillrunner.workflow.dag import PhaseGraph

if TYPE_CHECKING:
    from collections.abc import Iterator

log = get_logger(__name__)

SKILL_SUFFIXES = (".yaml", ".yml")


def parse_skill(data: dict[str, Any], source: Path) -> Skill:
    """Build and validate a skill from parsed YAML data.

    Args:
        data: Mapping loaded from a skill file.
        source: File the data came from, for error messages.

    Returns:
        The validated skill.

    Raises:
        SkillLoadError: If the data is not a valid skill definition.
    """
    try:
        skill = Skill.model_validate(data)
    except pydantic.ValidationError as e:
        raise SkillLoadError(source, _summarize(e)) from e
    try:
        PhaseGraph.from_skill(skill)
    except ValidationError as e:
        raise SkillLoadError(source, str(e)) from e
    return skill


def _summarize(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "skill"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class SkillRegistry:
    """Skills available to the engine, keyed by id.

    Skills are immutable once registered.
    """

    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}
        self._yaml = YAML(typ="safe")

    def load_file(self, path: Path) -> Skill:
        """Load and register one skill file.

        Raises:
            SkillLoadError: If the file cannot be read, parsed or validated.
            ValueError: If a skill with the same id is already registered.
        """
        try:
            with path.open("r", encoding="utf-8") as f:
                data = self._yaml.load(f)
        except (OSError, YAMLError) as e:
            raise SkillLoadError(path, str(e)) from e
        if not isinstance(data, dict):
            raise SkillLoadError(path, "expected a mapping at the top level")

        skill = parse_skill(data, path)
        self.register(skill)
        log.debug("skill_loaded", skill=skill.id, path=str(path), phases=len(skill.phases))
        return skill

    def load_directory(self, directory: Path) -> int:
        """Load every ``*.yaml``/``*.yml`` file in a directory.

        Invalid files and duplicate ids are logged and skipped. A missing
        directory loads nothing.

        Returns:
            Number of skills loaded.
        """
        if not directory.is_dir():
            log.debug("skills_directory_missing", path=str(directory))
            return 0

        loaded = 0
        for path in sorted(directory.iterdir()):
            if path.suffix not in SKILL_SUFFIXES or not path.is_file():
                continue
            try:
                self.load_file(path)
            except (SkillLoadError, ValueError) as e:
                log.warning("skill_load_failed", path=str(path), error=str(e))
                continue
            loaded += 1
        log.info("skills_loaded", path=str(directory), count=loaded)
        return loaded

    def register(self, skill: Skill) -> None:
        """Register a skill.

        Raises:
            ValueError: If a skill with the same id is already registered.
        """
        if skill.id in self._skills:
            raise ValueError(f"skill '{skill.id}' is already registered")
        self._skills[skill.id] = skill

    def get_skill(self, skill_id: str) -> Skill:
        """Look a skill up by id.

        Raises:
            SkillNotFoundError: If no skill has this id.
        """
        skill = self._skills.get(skill_id)
        if skill is None:
            raise SkillNotFoundError(skill_id, list(self._skills))
        return skill

    def get_skill_by_name(self, name: str) -> Skill:
        """Look a skill up by display name, case-insensitively.

        Raises:
            SkillNotFoundError: If no skill has this name.
        """
        wanted = name.casefold()
        for skill in self._skills.values():
            if skill.name.casefold() == wanted:
                return skill
        raise SkillNotFoundError(name, list(self._skills))

    def resolve(self, id_or_name: str) -> Skill:
        """Look a skill up by id, then by name."""
        if id_or_name in self._skills:
            return self._skills[id_or_name]
        return self.get_skill_by_name(id_or_name)

    def list_skills(self) -> list[Skill]:
        """Registered skills sorted by id."""
        return [self._skills[k] for k in sorted(self._skills)]

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._skills

    def __len__(self) -> int:
        return len(self._skills)

    def __iter__(self) -> Iterator[Skill]:
        return iter(self.list_skills())
