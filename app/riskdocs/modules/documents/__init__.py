"""
Survey documents and their module instances.

- Documents are versioned within a lineage (draft / issued / superseded)
- Issued and superseded documents are immutable (revisioning creates a new record)
- Lifecycle transitions are recorded to the append-only audit trail
"""
