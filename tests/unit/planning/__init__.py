"""Unit tests for dagforge.planning."""
