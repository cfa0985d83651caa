"""Exam analytics engine."""
