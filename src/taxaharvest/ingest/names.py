"""Name-variant resolver hook.

Scientific-name parsing lives outside this package. Callers plug a resolver
in to populate the searchable name rows of each cached entity.
"""

from collections.abc import Iterable
from typing import Any, Protocol

from taxaharvest.store.models import NameVariant


class NameResolver(Protocol):
    """Produces name variants from a decoded provider record."""

    def __call__(self, raw_record: dict[str, Any]) -> Iterable[NameVariant]:
        """Resolve name variants.

        Args:
            raw_record: Decoded provider JSON for one entity.

        Returns:
            Name variants to index.
        """
        ...


def no_name_variants(
    raw_record: dict[str, Any],  # noqa: ARG001
) -> Iterable[NameVariant]:
    """Default resolver that indexes no names."""
    return ()
