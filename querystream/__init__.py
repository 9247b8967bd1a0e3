"""
querystream

Streams SQL query results from PostgreSQL as gzip-compressed JSON records.
"""

__version__ = "1.0.0"
