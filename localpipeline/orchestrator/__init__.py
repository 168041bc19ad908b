"""Agent orchestration: retries, dispatch and the polling loop."""
