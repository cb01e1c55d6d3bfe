"""Workflow definition schema."""
