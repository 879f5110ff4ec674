"""Task engine for the agent task queue.

This package provides the task model and lifecycle rules, the file-per-task
store, the dependency graph used for scheduling decisions, and the task
manager that validates and creates tasks.
"""
