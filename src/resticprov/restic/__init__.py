"""Restic command construction, environment assembly and execution."""
