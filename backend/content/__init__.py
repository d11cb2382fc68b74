"""
Content Module

Layer archive reading, whiteout filtering and path indexing of images.
"""
