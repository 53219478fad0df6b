"""
Document types (per company). Deactivation is a soft delete.
"""
