"""Unit tests for dagforge.observability."""
