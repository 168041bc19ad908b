"""Queue of work items waiting for a free agent."""
