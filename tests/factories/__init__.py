"""Fake collaborators and builders shared by the test suite."""
