"""Collaborator implementations for the strategize, execute and review phases."""
