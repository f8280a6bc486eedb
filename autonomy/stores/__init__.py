"""Collaborator store implementations (in-memory)."""
