"""Unit tests for dagforge.utils."""
