"""Prompts handed to the external coding agent."""
