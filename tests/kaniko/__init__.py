"""Tests for building with kaniko pods."""
