"""
SQL statements for the timeline database
"""
