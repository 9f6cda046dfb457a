"""
Core package for shared utilities.

Configuration, structured logging and the exception hierarchy shared by the
API process and the queue workers.
"""
