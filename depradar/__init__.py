"""DepRadar — npm dependency vulnerability scanner.

This package provides the core logic for extracting dependencies from
npm manifests and lock files, resolving them against the OSV database,
scoring the findings, and reporting on them.
"""

__version__ = "0.1.0"
