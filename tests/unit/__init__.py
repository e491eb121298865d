"""Unit tests for dungeonsmith."""
