"""winprov package."""

__all__ = [
    "acquisition",
    "answer",
    "catalog",
    "cli",
    "config",
    "constants",
    "exceptions",
    "image",
    "installer",
    "mirrors",
    "models",
    "resolver",
    "state",
    "status",
    "utils",
]
