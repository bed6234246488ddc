"""Tollgate application package."""
