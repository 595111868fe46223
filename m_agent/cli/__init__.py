"""CLI module for m-agent."""
