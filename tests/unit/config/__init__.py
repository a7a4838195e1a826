"""Unit tests for dagforge.config."""
