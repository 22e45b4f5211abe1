"""Utility helpers (IO, logging, pytrees)."""
