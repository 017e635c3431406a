"""taskweave.core — the workflow execution engine."""
