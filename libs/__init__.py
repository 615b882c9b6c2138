"""Shared libraries for my_ml_project.

Subpackages:
- ``libs.common``: configuration, logging, and metrics.

Notes:
- Avoid serving-specific logic; keep modules cohesive and broadly useful.
"""
