"""Policies applied around every task execution."""
