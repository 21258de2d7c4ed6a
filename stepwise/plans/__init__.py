"""Plan documents and the plan store."""
