"""
Two-video compare backend.

Runs two short-form videos through probe, download, sanitize, model
inference and output normalization, and exposes the work as pollable jobs.
"""

__version__ = "1.0.0"
