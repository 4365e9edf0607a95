"""Embedding target resolution helpers.

The Embedding Directory is named after the machine the bundle is built for:

- The architecture comes from the host (``platform.machine()``) or an
  explicit override (e.g. ``arm64``, ``x86_64``).
- The OS version comes from the host (``platform.mac_ver()``) or an explicit
  override, and is reduced to ``MAJOR_MINOR`` so that point releases share a
  directory name (``14.2.1`` -> ``14_2``).

The interpreter's own build tag (``sysconfig.get_platform()``) is not used: it
names the deployment target Python was compiled for, not the host.
"""

from dataclasses import dataclass
import platform
import re


class TargetResolutionError(ValueError):
    """Raised when a target spec cannot be resolved to an embedding target."""


@dataclass(frozen=True, slots=True)
class EmbedTarget:
    """Embedding target configuration.

    :ivar arch: Normalized architecture name (e.g. ``arm64``).
    :ivar os_version: OS version as ``MAJOR_MINOR``.
    """

    arch: str
    os_version: str


_OSVER_RE: re.Pattern[str] = re.compile(r"^(?P<maj>\d+)(?:[._](?P<min>\d+))?(?:[._]\d+)*$")

_ARCH_ALIASES: dict[str, str] = {
    "aarch64": "arm64",
    "arm64": "arm64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x86-64": "x86_64",
    "i386": "i386",
    "i686": "i386",
}


def resolve_embed_target(
    *,
    arch_override: str | None = None,
    os_version_override: str | None = None,
) -> EmbedTarget:
    """Resolve user-supplied target arguments into an :class:`~EmbedTarget`.

    :param arch_override: Optional explicit architecture.
    :param os_version_override: Optional explicit OS version.
    :returns: Resolved target.
    :raises TargetResolutionError: If the target cannot be resolved.
    """

    if arch_override is not None and os_version_override is not None:
        return EmbedTarget(
            arch=_normalize_arch(arch_override),
            os_version=_normalize_os_version(os_version_override),
        )

    host_version: str = platform.mac_ver()[0]
    if host_version == "":
        raise TargetResolutionError(
            f"Host {platform.system()!r} is not macOS; pass both --arch and --os-version."
        )

    arch_raw: str = arch_override if arch_override is not None else platform.machine()
    version_raw: str = os_version_override if os_version_override is not None else host_version

    return EmbedTarget(
        arch=_normalize_arch(arch_raw),
        os_version=_normalize_os_version(version_raw),
    )


def embedding_dir_name(target: EmbedTarget) -> str:
    """Build the deterministic Embedding Directory name for a target.

    :param target: Embedding target.
    :returns: Directory name such as ``lib-arm64-14_2``.
    """

    return f"lib-{target.arch}-{target.os_version}"


def _normalize_arch(arch: str) -> str:
    """Map common architecture spellings onto Mach-O names.

    :param arch: Architecture string.
    :returns: Normalized architecture.
    :raises TargetResolutionError: If the architecture is not recognized.
    """

    normalized: str | None = _ARCH_ALIASES.get(arch.lower())
    if normalized is None:
        raise TargetResolutionError(f"Unsupported architecture: {arch!r}")
    return normalized


def _normalize_os_version(version: str) -> str:
    """Reduce an OS version to ``MAJOR_MINOR``.

    :param version: Version string (``14``, ``14.2``, ``10_15_7``...).
    :returns: ``MAJOR_MINOR`` form.
    :raises TargetResolutionError: If the version is malformed.
    """

    m = _OSVER_RE.match(version.strip())
    if m is None:
        raise TargetResolutionError(
            f"Invalid OS version {version!r}; expected 'MAJOR.MINOR'."
        )
    minor: str = m.group("min") if m.group("min") is not None else "0"
    return f"{int(m.group('maj'))}_{int(minor)}"
