"""
Land Registry Kernel

Workflow state machines for land administration with:
- Configurable per-domain transition tables (planning, survey, deeds)
- Role-checked transitions with optimistic (compare-and-swap) versioning
- Append-only, hash-chained audit trail with independent verification
- Compliance reporting and retention archival
"""

__version__ = "0.1.0"
