"""Operator command line for no-wing."""
