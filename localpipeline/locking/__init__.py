"""Re-entry guards for agent operations."""
