"""Tests for the builder module."""
