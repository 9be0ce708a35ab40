"""Tests for veiled_agent."""
