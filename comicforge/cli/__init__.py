"""
Command line interface for ComicForge
"""
