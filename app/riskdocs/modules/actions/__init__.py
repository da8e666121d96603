"""
Corrective actions raised against survey documents, and their carry-forward
into new revisions.
"""
