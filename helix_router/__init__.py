"""Helix Router - complexity-aware routing of chat completions across PRO/MID/LOW tiers."""

__version__ = "1.0.0"
