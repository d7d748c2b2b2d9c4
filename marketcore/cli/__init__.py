"""Operator command-line interface for marketcore."""
