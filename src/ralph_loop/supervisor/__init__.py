"""Supervisor: workspace guard, agent runner, retry policy and the iteration loop."""
