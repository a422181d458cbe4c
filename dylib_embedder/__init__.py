"""dylib-embedder.

A small post-build utility that makes a macOS application bundle
self-contained by copying its package-manager dynamic libraries into the
bundle and relinking every binary relative to the executable.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
