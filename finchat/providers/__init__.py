"""Completion engines and per-turn engine selection."""
