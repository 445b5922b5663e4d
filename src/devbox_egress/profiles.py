"""Egress profiles: named, file-backed policy templates.

A profile sets a container's default egress posture and lists the domains
that are exceptions to it. Profiles are plain text files named
``<name>.conf``::

    # Strict: deny everything except package registries
    @description Package registries and source hosting only
    @mode filtering
    @default deny
    github.com
    *.npmjs.org
    -gist.github.com
    @block-ip 169.254.169.254/32

Lines starting with ``@`` are directives (``@description``, ``@mode``,
``@default allow|deny`` or the ``@default-allow``/``@default-deny``
shorthands, and ``@block-ip``). Every other non-comment line is a domain. A
bare domain is an exception to the default: allowed under ``deny``, blocked
under ``allow``. A ``+`` prefix always allows and a ``-`` prefix always
blocks.

Files in the user profiles directory shadow the built-in profiles shipped
with the package. Profiles are read at lookup time, so edits take effect on
the next provision or reconfigure.
"""

import ipaddress
import logging
import re
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from devbox_egress.domains import is_valid_domain_pattern
from devbox_egress.errors import ProfileNotFoundError, ProfileValidationError

logger = logging.getLogger(__name__)

BUILTIN_PROFILES_DIR = Path(__file__).parent / "data" / "profiles"

PROFILE_SUFFIX = ".conf"

_PROFILE_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class Action(StrEnum):
    """Egress decision for a destination."""

    ALLOW = "allow"
    DENY = "deny"


class NetworkMode(StrEnum):
    """How a profile is enforced.

    FILTERING: isolated network plus DNS filtering sidecar
    NONE: no network at all (airgapped)
    UNRESTRICTED: engine default networking, no filtering (permissive)
    """

    FILTERING = "filtering"
    NONE = "none"
    UNRESTRICTED = "unrestricted"


class Profile(BaseModel):
    """A parsed egress profile."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    mode: NetworkMode | None = None
    default_action: Action | None = None
    allowed_domains: tuple[str, ...] = Field(default_factory=tuple)
    blocked_domains: tuple[str, ...] = Field(default_factory=tuple)
    blocked_cidrs: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def is_filtering(self) -> bool:
        return self.mode == NetworkMode.FILTERING


def parse_profile(name: str, text: str) -> Profile:
    """Parse profile file contents.

    Domain lines are kept as written (lowercased); validation is left to
    :meth:`ProfileRegistry.validate` so every problem is reported at once.

    Raises:
        ProfileValidationError: If a directive is unknown or malformed
    """
    description = ""
    mode: NetworkMode | None = None
    default_action: Action | None = None
    plain: list[str] = []
    allowed: list[str] = []
    blocked: list[str] = []
    cidrs: list[str] = []
    errors: list[str] = []

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("@"):
            directive, _, value = line[1:].partition(" ")
            value = value.strip()
            if directive == "description":
                description = value
            elif directive == "mode":
                try:
                    mode = NetworkMode(value)
                except ValueError:
                    errors.append(f"line {lineno}: unknown mode {value!r}")
            elif directive == "default":
                try:
                    default_action = Action(value)
                except ValueError:
                    errors.append(f"line {lineno}: unknown default action {value!r}")
            elif directive == "default-allow":
                default_action = Action.ALLOW
            elif directive == "default-deny":
                default_action = Action.DENY
            elif directive == "block-ip":
                cidrs.append(value)
            else:
                errors.append(f"line {lineno}: unknown directive @{directive}")
            continue

        entry = line.split()[0].lower().rstrip(".")
        if entry.startswith("+"):
            allowed.append(entry[1:])
        elif entry.startswith("-"):
            blocked.append(entry[1:])
        else:
            plain.append(entry)

    if errors:
        raise ProfileValidationError(name, errors)

    # Bare domains are exceptions to the default posture
    if default_action == Action.ALLOW:
        blocked = plain + blocked
    else:
        allowed = plain + allowed

    return Profile(
        name=name,
        description=description,
        mode=mode,
        default_action=default_action,
        allowed_domains=tuple(dict.fromkeys(allowed)),
        blocked_domains=tuple(dict.fromkeys(blocked)),
        blocked_cidrs=tuple(cidrs),
    )


class ProfileRegistry:
    """Look up and validate profiles from the user and built-in directories."""

    def __init__(
        self,
        profiles_dir: Path | None = None,
        builtin_dir: Path = BUILTIN_PROFILES_DIR,
    ):
        """Initialize the registry.

        Args:
            profiles_dir: User profile directory, searched first (may not exist)
            builtin_dir: Directory of profiles shipped with the package
        """
        self.profiles_dir = profiles_dir
        self.builtin_dir = builtin_dir

    def _search_path(self) -> list[Path]:
        dirs = [self.builtin_dir]
        if self.profiles_dir is not None:
            dirs.insert(0, self.profiles_dir)
        return dirs

    def _find(self, name: str) -> Path | None:
        for directory in self._search_path():
            candidate = directory / f"{name}{PROFILE_SUFFIX}"
            if candidate.is_file():
                return candidate
        return None

    def available(self) -> list[str]:
        """Names of all profiles that can be loaded."""
        names: set[str] = set()
        for directory in self._search_path():
            if directory.is_dir():
                names.update(
                    p.stem for p in directory.glob(f"*{PROFILE_SUFFIX}") if _PROFILE_NAME.match(p.stem)
                )
        return sorted(names)

    def load(self, name: str) -> Profile:
        """Load and validate a profile by name.

        Raises:
            ProfileNotFoundError: If no profile file exists for the name
            ProfileValidationError: If the profile is inconsistent
        """
        if not _PROFILE_NAME.match(name):
            raise ProfileNotFoundError(f"Unknown egress profile: {name!r}")

        path = self._find(name)
        if path is None:
            raise ProfileNotFoundError(
                f"Unknown egress profile: {name!r} (available: {', '.join(self.available())})"
            )

        profile = parse_profile(name, path.read_text())
        errors = self.validate(profile)
        if errors:
            raise ProfileValidationError(name, errors)

        logger.debug(f"Loaded profile '{name}' from {path}")
        return profile

    @staticmethod
    def validate(profile: Profile) -> list[str]:
        """Validate a profile's consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if profile.mode is None:
            errors.append("missing @mode directive")
        if profile.default_action is None:
            errors.append("missing default action (@default allow|deny)")

        if profile.mode == NetworkMode.NONE and profile.default_action == Action.ALLOW:
            errors.append("mode 'none' cannot have a default action of 'allow'")
        if profile.mode == NetworkMode.UNRESTRICTED and profile.default_action == Action.DENY:
            errors.append("mode 'unrestricted' cannot have a default action of 'deny'")

        has_entries = profile.allowed_domains or profile.blocked_domains or profile.blocked_cidrs
        if profile.mode is not None and not profile.is_filtering and has_entries:
            errors.append(f"mode '{profile.mode}' does not take domain or IP entries")

        for domain in (*profile.allowed_domains, *profile.blocked_domains):
            if not is_valid_domain_pattern(domain):
                errors.append(f"Invalid domain pattern: {domain}")

        for cidr in profile.blocked_cidrs:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                errors.append(f"Invalid CIDR block: {cidr}")

        return errors
