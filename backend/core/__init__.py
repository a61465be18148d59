"""
Core infrastructure: logging, settings, errors, geometry, time helpers,
source interfaces and the sqlite repositories
"""
