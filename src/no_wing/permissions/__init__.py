"""Role selection, permission elevation and human approval."""
