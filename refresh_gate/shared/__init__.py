"""
Shared models, interfaces, errors and logging for the Refresh Gate.
"""
