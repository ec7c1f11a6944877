"""Per-environment CPU/memory requests and limits for platform components."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

PROFILES_DIR = Path(__file__).parent / "data" / "profiles"

ENVIRONMENT_ALIASES = {
    "dev": "dev",
    "development": "dev",
    "prod": "prod",
    "production": "prod",
}


@dataclass(frozen=True)
class ResourceProfile:
    """Requests and limits of one component; limits may be empty."""

    component: str
    requests: Mapping[str, str]
    limits: Mapping[str, str]

    def as_values(self) -> dict:
        """Render as the ``resources`` block of a Helm chart or pod spec."""
        resources = {"requests": dict(self.requests)}
        if self.limits:
            resources["limits"] = dict(self.limits)
        return resources


def _quantities(data: Mapping | None) -> Mapping[str, str]:
    return MappingProxyType({key: str(value) for key, value in (data or {}).items()})


class ResourceProfileCatalogue:
    """Immutable view over the profile file of one environment."""

    def __init__(
        self,
        environment: str,
        profiles: Mapping[str, ResourceProfile],
        presets: Mapping[str, str],
    ):
        self.environment = environment
        self._profiles = MappingProxyType(dict(profiles))
        self._presets = MappingProxyType(dict(presets))

    @classmethod
    def load(cls, environment: str) -> "ResourceProfileCatalogue":
        try:
            canonical = ENVIRONMENT_ALIASES[environment.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown environment '{environment}'. "
                f"Expected one of: {', '.join(sorted(ENVIRONMENT_ALIASES))}"
            ) from None
        return _load(canonical)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ResourceProfileCatalogue":
        profiles = {
            name: ResourceProfile(
                component=name,
                requests=_quantities(spec.get("requests")),
                limits=_quantities(spec.get("limits")),
            )
            for name, spec in (data.get("components") or {}).items()
        }
        presets = {key: str(value) for key, value in (data.get("presets") or {}).items()}
        return cls(data["environment"], profiles, presets)

    @property
    def components(self) -> list[str]:
        return sorted(self._profiles)

    def profile(self, component: str) -> ResourceProfile:
        try:
            return self._profiles[component]
        except KeyError:
            raise KeyError(
                f"No resource profile for component '{component}' in '{self.environment}'"
            ) from None

    def requests(self, component: str) -> Mapping[str, str]:
        return self.profile(component).requests

    def limits(self, component: str) -> Mapping[str, str]:
        return self.profile(component).limits

    def preset(self, name: str) -> str:
        """Chart-level size presets, e.g. ``elastic-data`` -> ``large``."""
        try:
            return self._presets[name]
        except KeyError:
            raise KeyError(f"No preset '{name}' in '{self.environment}'") from None

    def as_values(self, component: str) -> dict:
        return self.profile(component).as_values()


@lru_cache(maxsize=None)
def _load(environment: str) -> ResourceProfileCatalogue:
    with open(PROFILES_DIR / f"{environment}.yaml", encoding="utf-8") as f:
        return ResourceProfileCatalogue.from_dict(yaml.safe_load(f))
