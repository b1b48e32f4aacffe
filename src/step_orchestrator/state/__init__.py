"""Persisted run state: step tracking and the agent run registry."""
