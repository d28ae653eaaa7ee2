"""peerdrop, files between two endpoints over a direct channel or through a relay"""

__version__ = "0.1.0"
