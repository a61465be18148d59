"""
Background agents driving the timeline pipeline
"""
