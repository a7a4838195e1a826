"""Unit tests for dagforge.ui."""
