"""Local work-item pipeline with coding-agent orchestration."""
