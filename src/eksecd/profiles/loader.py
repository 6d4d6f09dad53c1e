"""Read assistant profiles from YAML files layered over the built-in ones."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import BUILTIN_PROFILES, AgentProfile

logger = logging.getLogger(__name__)

PROFILE_SUFFIXES = (".yml", ".yaml")


class ProfileLoadError(RuntimeError):
    """Raised when a profile file is unreadable or invalid, or a profile is missing."""


def profile_files(base: Path) -> list[Path]:
    """``base`` itself when it is a file, else its YAML files sorted by name."""

    if base.is_file():
        return [base]
    return sorted(path for path in base.iterdir() if path.suffix in PROFILE_SUFFIXES and path.is_file())


class ProfileLoader:
    """Resolve which assistant CLI configuration each profile id maps to.

    The built-in ``claude`` and ``codex`` profiles always exist. Each search
    path (a YAML file or a directory of them) may add profiles or replace
    earlier ones with the same id; missing search paths are ignored.
    """

    def __init__(
        self,
        search_paths: Iterable[str | Path] | None = None,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        paths = [Path(path).expanduser() for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._sources: dict[str, Path] = {}
        self._log = log or logger

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    @property
    def sources(self) -> dict[str, Path]:
        """File each non-built-in profile was read from by the last :meth:`load_all`."""

        return dict(self._sources)

    def load_all(self) -> dict[str, AgentProfile]:
        profiles = {key: profile.model_copy(deep=True) for key, profile in BUILTIN_PROFILES.items()}
        sources: dict[str, Path] = {}
        errors: list[str] = []

        for base in self._search_paths:
            seen_here: dict[str, Path] = {}
            for path in profile_files(base):
                profile = self._read(path, errors)
                if profile is None:
                    continue
                if profile.id in seen_here:
                    errors.append(
                        f"{path}: profile '{profile.id}' is already defined in {seen_here[profile.id]}"
                    )
                    continue
                seen_here[profile.id] = path
                if profile.id in profiles:
                    self._log.debug(
                        "Profile overridden",
                        extra={"profile": profile.id, "source": str(path)},
                    )
                profiles[profile.id] = profile
                sources[profile.id] = path

        if errors:
            raise ProfileLoadError("; ".join(errors))
        self._sources = sources
        return profiles

    def get(self, profile_id: str) -> AgentProfile:
        profiles = self.load_all()
        try:
            return profiles[profile_id]
        except KeyError as exc:
            available = ", ".join(sorted(profiles))
            raise ProfileLoadError(
                f"Profile '{profile_id}' is not configured (available: {available})"
            ) from exc

    @staticmethod
    def _read(path: Path, errors: list[str]) -> AgentProfile | None:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as exc:
            errors.append(f"{path}: cannot read profile file: {exc}")
            return None
        except yaml.YAMLError as exc:
            errors.append(f"{path}: invalid YAML: {exc}")
            return None
        if document is None:
            return None
        try:
            return AgentProfile.model_validate(document)
        except ValidationError as exc:
            errors.append(f"{path}: invalid assistant profile: {exc}")
            return None


def load_profiles(search_paths: Iterable[str | Path] | None = None) -> dict[str, AgentProfile]:
    return ProfileLoader(search_paths).load_all()


__all__ = ["AgentProfile", "ProfileLoadError", "ProfileLoader", "load_profiles", "profile_files"]
