"""
Repository mixins for the DuckDB order view store.

- IdentityMixin: legacy/opaque identifier resolution and holder entities
- ProjectionsMixin: projection rebuild-and-swap, versions and refresh audit
- QueriesMixin: paged reads from a stored projection or the live join
"""
from orderview.repositories.identity import IdentityMixin
from orderview.repositories.projections import ProjectionsMixin
from orderview.repositories.queries import QueriesMixin

__all__ = [
    "IdentityMixin",
    "ProjectionsMixin",
    "QueriesMixin",
]
