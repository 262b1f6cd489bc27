"""
Importing game map exports into tiled, multi-resolution maps.
"""
