"""Unit tests for dagforge.control_plane."""
