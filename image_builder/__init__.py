"""
.. include:: ../DESIGN.md
"""

__all__ = [
    "config",
    "coordinator",
    "dispatch",
    "docker_context",
    "jib",
    "kaniko",
    "tag",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
