"""
Settings loading for Research Guard.
"""
