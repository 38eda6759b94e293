"""
HTTP server for Research Guard.
"""
