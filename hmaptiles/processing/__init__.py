"""
Rendering of grids and zoom levels.
"""
