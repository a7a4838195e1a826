"""Unit tests for dagforge.domain."""
