"""Catalog of selectable terminal environment profiles.

Each profile names a base image (built from one target of the web-shell
Dockerfile) and the resource limits applied to every container started from
it. The catalog is read-only once the process has started.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from webshell.common import settings
from webshell.common.errors import ProfileNotFound


@dataclass(frozen=True)
class ResourceLimits:
    """Per-container limits: CPU share, memory ceiling, process count ceiling."""

    cpus: float = settings.DEFAULT_CPUS
    memory: str = settings.DEFAULT_MEMORY
    pids: int = settings.DEFAULT_PIDS

    @property
    def nano_cpus(self) -> int:
        return int(self.cpus * 1_000_000_000)


@dataclass(frozen=True)
class Profile:
    name: str
    display: str
    description: str
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    icon: str = ""
    image_size: str = ""
    boot_time: str = ""
    packages: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    recommended_for: tuple[str, ...] = ()

    @property
    def image(self) -> str:
        return f"{settings.IMAGE_PREFIX}:{self.name}"

    @property
    def build_target(self) -> str:
        return self.name

    def serialize(self) -> dict[str, Any]:
        data = asdict(self)
        data["image"] = self.image
        for key in ("packages", "features", "recommended_for"):
            data[key] = list(data[key])
        return data


PROFILES = {
    "minimal": Profile(
        name="minimal",
        display="Minimal",
        icon="⚡",
        description="Lightweight & fast - bare essentials only",
        image_size="~200MB",
        boot_time="< 1s",
        limits=ResourceLimits(cpus=0.5, memory="256m", pids=128),
        packages=("zsh", "bash", "vim", "git", "curl", "python3", "make", "g++"),
        features=(
            "Basic shell configuration",
            "Essential CLI tools",
            "Minimal history (1,000 lines)",
            "Simple prompt",
            "Fast startup (< 1s)",
        ),
        recommended_for=(
            "Quick scripts",
            "CI/CD pipelines",
            "Resource-constrained environments",
            "Fast startup priority",
        ),
    ),
    "default": Profile(
        name="default",
        display="Default",
        icon="🚀",
        description="Full-featured with enhanced tools & plugins",
        image_size="~240MB",
        boot_time="< 2s",
        limits=ResourceLimits(),
        packages=(
            "All minimal packages +",
            "zsh-autosuggestions",
            "zsh-syntax-highlighting",
            "bash-completion",
            "wget",
            "nano",
            "htop",
            "ncdu",
            "tree",
            "less",
            "jq",
            "ncurses",
        ),
        features=(
            "Enhanced shell configuration",
            "Command auto-suggestions",
            "Syntax highlighting",
            "Git aliases & integration",
            "Advanced completion",
            "Extended history (10,000 lines)",
            "Customizable prompt with time",
            "System monitoring tools",
        ),
        recommended_for=(
            "Interactive development",
            "Full-featured terminal experience",
            "Productivity workflows",
            "System administration",
        ),
    ),
}


class EnvironmentCatalog:
    """Read-only lookup of environment profiles by name."""

    def __init__(self, profiles: Mapping[str, Profile]):
        self._profiles = MappingProxyType(dict(profiles))

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[Profile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def names(self) -> list[str]:
        return list(self._profiles)

    def find(self, name: str) -> Profile | None:
        return self._profiles.get(name)

    def get(self, name: str) -> Profile:
        profile = self._profiles.get(name)
        if profile is None:
            raise ProfileNotFound(f"Unknown environment profile: {name}")
        return profile

    def compare(self, first: str, second: str) -> dict[str, Any] | None:
        """Describe how the second profile differs from the first."""
        a, b = self.find(first), self.find(second)
        if a is None or b is None:
            return None
        return {
            "comparison": [a.serialize(), b.serialize()],
            "differences": {
                "additional_packages": len(b.packages) - len(a.packages),
                "additional_features": len(b.features) - len(a.features),
                "cpus": b.limits.cpus - a.limits.cpus,
                "memory": [a.limits.memory, b.limits.memory],
                "pids": b.limits.pids - a.limits.pids,
            },
        }


DEFAULT_CATALOG = EnvironmentCatalog(PROFILES)
