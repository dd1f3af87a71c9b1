"""Build stages module.

This module handles:
- Toolchain command execution
- Dependency compilation with cache reuse
- Application compilation against prebuilt dependencies
- Packaging the executable into a minimal runtime layout
"""

from stagedbuild.builds.artifacts import ApplicationArtifact, ArtifactSet

__all__ = ["ApplicationArtifact", "ArtifactSet"]

# Stage builders live in submodules to avoid circular imports
# Access via stagedbuild.builds.dependencies, etc.
