"""
Response exporters.
"""
