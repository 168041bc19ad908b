"""File-backed stores for agent state, failures and activity."""
