"""Tests for Easy FGR."""
