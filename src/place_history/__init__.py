"""Tooling for the r/place 2022 canvas history dataset."""

__version__ = "0.1.0"
