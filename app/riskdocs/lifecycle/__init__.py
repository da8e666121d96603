"""
Document lifecycle engine: draft -> issued -> superseded.

Callers go through `machine`; the other modules are its collaborators.
"""
