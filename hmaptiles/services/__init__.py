"""
Services coordinating imports, tiles and storage.
"""
