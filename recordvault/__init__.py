"""
recordvault - file-backed JSON record storage with indexing, search, audit and cleanup.
"""

VERSION = "1.0.0"
