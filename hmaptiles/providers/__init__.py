"""
Providers for tileset textures and in-memory tile caches.
"""
