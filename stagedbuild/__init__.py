"""stagedbuild - Dependency-cache-aware staged build orchestrator.

This package separates compiling the dependency graph from compiling the
application so that repeated builds reuse cached dependency artifacts while
still producing a single, minimal runtime executable.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
