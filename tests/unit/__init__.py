"""Unit tests for syn2mas."""
