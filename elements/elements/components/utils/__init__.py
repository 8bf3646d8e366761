"""
Helpers shared by components.
"""
