"""
schemaledger: reversible schema migrations for relational stores.

Tracks schema version history in the store itself, diffs declared entities
against the applied schema, and generates and applies ordered, reversible
migrations.
"""

__version__ = '0.1.0'
