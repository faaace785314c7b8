"""
SampleMeta - immutable per-sample labels carried alongside every channel item.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple, Union

Scalar = Union[str, int, float, bool, None]

_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class SampleMeta(Mapping):
    """Immutable mapping of sample labels keyed by ``id``.

    ``id`` and ``single_end`` are always present; any further scalar
    attributes discovered with the sample are kept in ``extra``. Instances
    are never mutated: downstream tasks forward the same object, and
    :meth:`replace` returns a new record when a derived label set is needed.

    Attributes
    ----------
    id : str
        Unique sample identifier
    single_end : bool
        Whether the sample has a single read file instead of a pair
    extra : tuple of (str, scalar)
        Additional attributes, sorted by key
    """

    id: str
    single_end: bool = False
    extra: Tuple[Tuple[str, Scalar], ...] = field(default=())

    def __post_init__(self):
        """Validate the record at the boundary where samples are discovered."""
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError(f"Sample id must be a non-empty string, got {self.id!r}")
        if not isinstance(self.single_end, bool):
            raise ValueError(f"single_end must be a bool, got {self.single_end!r}")
        keys = set()
        for key, value in self.extra:
            if key in ("id", "single_end") or key in keys:
                raise ValueError(f"Duplicate sample attribute '{key}'")
            if not isinstance(value, _SCALAR_TYPES):
                raise ValueError(
                    f"Sample attribute '{key}' must be a scalar, got {type(value).__name__}"
                )
            keys.add(key)
        # canonical ordering keeps equality and hashing independent of argument order
        object.__setattr__(self, "extra", tuple(sorted(self.extra)))

    @classmethod
    def create(cls, id: str, single_end: bool = False, **extra: Scalar) -> "SampleMeta":
        """Build a record from keyword attributes."""
        return cls(id=id, single_end=single_end, extra=tuple(extra.items()))

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain dict copy of all attributes."""
        return {"id": self.id, "single_end": self.single_end, **dict(self.extra)}

    def __getitem__(self, key: str) -> Scalar:
        if key == "id":
            return self.id
        if key == "single_end":
            return self.single_end
        for extra_key, value in self.extra:
            if extra_key == key:
                return value
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        yield "id"
        yield "single_end"
        for key, _ in self.extra:
            yield key

    def __len__(self) -> int:
        return 2 + len(self.extra)

    def __getattr__(self, name: str) -> Scalar:
        # lets templates write meta.<attribute> for extra attributes
        if name.startswith("_") or name == "extra":
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None


def sample_id(meta: Optional[SampleMeta]) -> Optional[str]:
    """Return the sample id of a record, or None for shared items."""
    return meta.id if meta is not None else None
