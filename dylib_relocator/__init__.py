"""dylib-relocator.

Embeds the source-tree dynamic libraries an app bundle's executable links
against into the bundle itself, and rewrites Mach-O link metadata so the
bundle no longer depends on build-machine paths.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
