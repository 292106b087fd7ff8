"""
Command-line tools for the export server.
"""
