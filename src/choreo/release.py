# Copyright (c) 2024 Choreo Contributors
# MIT License

"""Choreo release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Choreo Contributors"
__codename__ = "Overture"
