"""Supervises a local opencode server and keeps one context part per session current."""
