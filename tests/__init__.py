"""Tests for image-builder."""
