"""CLI provider profiles: data-driven pattern tables per coding assistant.

Each profile is a YAML file holding ordered regex lists that the output
classifier and fast-path engine consult. New assistants are supported by
dropping a YAML file into a search path, not by changing code.

Search order (first found wins for each profile id):
- .conductor/providers/       (project-specific)
- ~/.conductor/providers/     (user-global)
- conductor/config/providers/ (built-in)
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

# Valid profile id: alphanumeric, underscores, hyphens only
# Prevents path traversal via ids like "../../etc/passwd"
_VALID_PROFILE_ID = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

_PATTERN_LIST_FIELDS = (
    "working_patterns",
    "waiting_patterns",
    "confirm_patterns",
    "trust_patterns",
    "completion_patterns",
    "work_done_patterns",
)


class ProfileNotFoundError(Exception):
    """Provider profile not found in any search path."""

    pass


class ProfileValidationError(Exception):
    """Provider profile is malformed."""

    pass


@dataclass(frozen=True)
class ProviderProfile:
    """Compiled pattern tables for one CLI coding assistant."""

    id: str
    name: str
    prompt_pattern: re.Pattern[str]
    working_patterns: tuple[re.Pattern[str], ...]
    waiting_patterns: tuple[re.Pattern[str], ...]
    confirm_patterns: tuple[re.Pattern[str], ...]
    trust_patterns: tuple[re.Pattern[str], ...]
    completion_patterns: tuple[re.Pattern[str], ...]
    work_done_patterns: tuple[re.Pattern[str], ...]
    description: str = ""

    @staticmethod
    def any_match(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
        return any(p.search(text) for p in patterns)


@dataclass
class ProfileLoader:
    """Load, validate and cache provider profiles."""

    search_paths: list[Path] = field(default_factory=list)

    # Package directory for built-in profiles
    package_dir: Path = field(
        default_factory=lambda: Path(__file__).parent.parent / "config" / "providers"
    )

    _schema: dict = field(default_factory=dict, init=False, repr=False)
    _cache: dict[str, ProviderProfile] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.search_paths:
            self.search_paths = [
                Path(".conductor/providers"),
                Path.home() / ".conductor/providers",
                self.package_dir,
            ]
        self._schema = self._load_schema()

    def _load_schema(self) -> dict:
        schema_path = Path(__file__).parent.parent / "config" / "provider_schema.json"
        try:
            with open(schema_path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise ProfileValidationError(
                f"Provider schema not found at {schema_path}. "
                f"Ensure conductor package is properly installed."
            )
        except json.JSONDecodeError as e:
            raise ProfileValidationError(f"Invalid JSON in provider schema at {schema_path}: {e}")

    def load(self, profile_id: str) -> ProviderProfile:
        """Load a profile by id.

        Raises:
            ProfileValidationError: If the id is invalid or the file is malformed
            ProfileNotFoundError: If no search path holds the profile
        """
        if not _VALID_PROFILE_ID.match(profile_id):
            raise ProfileValidationError(
                f"Invalid provider id '{profile_id}'. "
                f"Provider ids must start with a letter and contain only "
                f"alphanumeric characters, underscores, and hyphens."
            )

        cached = self._cache.get(profile_id)
        if cached is not None:
            return cached

        path = self._find_profile_file(profile_id)
        data = self._load_yaml(path)
        try:
            jsonschema.validate(data, self._schema)
        except jsonschema.ValidationError as e:
            raise ProfileValidationError(f"Schema validation failed for {path}: {e.message}")

        if data["id"] != profile_id:
            raise ProfileValidationError(
                f"Profile file {path} declares id '{data['id']}', expected '{profile_id}'"
            )

        profile = self._compile(data, path)
        self._cache[profile_id] = profile
        return profile

    def list_available(self) -> list[str]:
        """List profile ids found across all search paths."""
        found: set[str] = set()
        for search_path in self.search_paths:
            if not search_path.is_dir():
                continue
            for yaml_file in search_path.glob("*.yaml"):
                if _VALID_PROFILE_ID.match(yaml_file.stem):
                    found.add(yaml_file.stem)
        return sorted(found)

    def _find_profile_file(self, profile_id: str) -> Path:
        for search_path in self.search_paths:
            profile_file = search_path / f"{profile_id}.yaml"
            if profile_file.exists():
                return profile_file

        raise ProfileNotFoundError(
            f"Provider profile '{profile_id}' not found in search paths: {self.search_paths}"
        )

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ProfileValidationError(f"Invalid YAML in {path}: {e}")

        if data is None:
            raise ProfileValidationError(f"Empty or invalid YAML file: {path}")
        if not isinstance(data, dict):
            raise ProfileValidationError(
                f"Provider profile must be a dict, got {type(data).__name__} in {path}"
            )
        return data

    def _compile(self, data: dict[str, Any], path: Path) -> ProviderProfile:
        def compile_one(source: str) -> re.Pattern[str]:
            try:
                return re.compile(source)
            except re.error as e:
                raise ProfileValidationError(f"Invalid pattern {source!r} in {path}: {e}")

        lists = {
            name: tuple(compile_one(p) for p in data[name]) for name in _PATTERN_LIST_FIELDS
        }
        return ProviderProfile(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            prompt_pattern=compile_one(data["prompt_pattern"]),
            **lists,
        )

