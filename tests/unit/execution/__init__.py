"""Unit tests for dagforge.execution."""
