"""Logging setup and filesystem helpers shared by the agent."""
