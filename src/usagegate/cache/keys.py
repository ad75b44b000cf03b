"""
Deterministic cache key derivation.

A cache key is the SHA-256 digest of a product's canonical identity, so
two requests describing the same product resolve to the same entry no
matter how the caller ordered its fields or which request metadata it
attached.
"""

import hashlib
import json
import math
import unicodedata
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from usagegate.errors import InvalidIdentity

# Request metadata that never distinguishes one product from another.
# Compared after lower-casing the field name.
VOLATILE_FIELDS: frozenset[str] = frozenset({
    "userid",
    "user_id",
    "sessionid",
    "session_id",
    "requestid",
    "request_id",
    "timestamp",
    "ts",
    "createdat",
    "created_at",
    "updatedat",
    "updated_at",
    "scannedat",
    "scanned_at",
    "nonce",
    "_id",
})

# Fields that name what an analysis is about, as sent by the scanners.
ESSENTIAL_PRODUCT_FIELDS: tuple[str, ...] = (
    "barcode",
    "name",
    "product_name",
    "brand",
    "ingredients",
    "composition",
    "inci",
)

_SCALARS = (str, int, float, bool)


class IdentityStrategy(ABC):
    """Selects the identity fields of a subject for key derivation."""

    @abstractmethod
    def select(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """
        Pick the fields that identify the subject.

        Args:
            fields: Field names lower-cased, values as sent by the caller

        Returns:
            The subset of fields to hash
        """
        ...


class VolatileFieldFilter(IdentityStrategy):
    """Keeps every field except known request metadata."""

    def __init__(self, volatile: Iterable[str] = VOLATILE_FIELDS) -> None:
        self._volatile = frozenset(f.lower() for f in volatile)

    def select(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in fields.items() if k not in self._volatile}


class EssentialFieldSelector(IdentityStrategy):
    """Keeps only an allow-list of fields."""

    def __init__(self, essential: Iterable[str] = ESSENTIAL_PRODUCT_FIELDS) -> None:
        self._essential = frozenset(f.lower() for f in essential)

    def select(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in fields.items() if k in self._essential}


def _normalize_scalar(field: str, value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidIdentity(f"field '{field}' is not a finite number")
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = unicodedata.normalize("NFC", value)
        return " ".join(text.split()).casefold()
    raise InvalidIdentity(
        f"field '{field}' has unsupported type {type(value).__name__}"
    )


def _normalize_value(field: str, value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_scalar(field, v) for v in value if v is not None]
        # Order of list members (e.g. ingredients) does not change identity
        return sorted(items, key=lambda v: (type(v).__name__, v))
    return _normalize_scalar(field, value)


def canonicalize(fields: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize identity fields so equal subjects compare equal.

    Field names are trimmed and lower-cased; strings are NFC-normalized,
    whitespace-collapsed and case-folded; integral floats become ints;
    lists of scalars are sorted; None values are dropped.

    Raises:
        InvalidIdentity: If a value is not a scalar or list of scalars
    """
    canonical: dict[str, Any] = {}
    for raw_name, value in fields.items():
        if not isinstance(raw_name, str):
            raise InvalidIdentity(f"field name {raw_name!r} is not a string")
        name = raw_name.strip().lower()
        if value is None or not name:
            continue
        if isinstance(value, Mapping):
            raise InvalidIdentity(f"field '{name}' must be a scalar, got a mapping")
        if not isinstance(value, (*_SCALARS, list, tuple, set, frozenset)):
            raise InvalidIdentity(
                f"field '{name}' has unsupported type {type(value).__name__}"
            )
        canonical[name] = _normalize_value(name, value)
    return canonical


class CacheKeyBuilder:
    """
    Derives content-addressed cache keys.

    The identity strategy for each category is chosen when the builder
    is constructed; categories without an explicit strategy use
    ``default_strategy``.
    """

    def __init__(
        self,
        prefix: str = "analysis:",
        strategies: Mapping[str, IdentityStrategy] | None = None,
        default_strategy: IdentityStrategy | None = None,
        required_any: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        """
        Initialize the key builder.

        Args:
            prefix: Key namespace for analysis entries
            strategies: Identity strategy per category
            default_strategy: Strategy for unmapped categories
            required_any: Per category, fields of which at least one
                must be present (e.g. barcode or name)
        """
        self._prefix = prefix
        self._strategies = {
            self._normalize_category(c): s for c, s in (strategies or {}).items()
        }
        self._default = default_strategy or VolatileFieldFilter()
        self._required_any = {
            self._normalize_category(c): tuple(f.lower() for f in fields)
            for c, fields in (required_any or {}).items()
        }

    @property
    def prefix(self) -> str:
        return self._prefix

    @staticmethod
    def _normalize_category(category: str) -> str:
        if not isinstance(category, str) or not category.strip():
            raise InvalidIdentity("category must be a non-empty string")
        return category.strip().lower()

    def category_prefix(self, category: str) -> str:
        """Key prefix shared by every entry of a category."""
        return f"{self._prefix}{self._normalize_category(category)}:"

    def compute_key(self, category: str, identity_fields: Mapping[str, Any]) -> str:
        """
        Derive the cache key for a subject.

        Args:
            category: Subject category (e.g. "food", "cosmetics")
            identity_fields: Fields describing the subject

        Returns:
            ``<prefix><category>:<sha256 hex digest>``

        Raises:
            InvalidIdentity: If the category or identity fields are unusable
        """
        category = self._normalize_category(category)
        if not isinstance(identity_fields, Mapping):
            raise InvalidIdentity("identity fields must be a mapping")

        lowered = {
            k.strip().lower() if isinstance(k, str) else k: v
            for k, v in identity_fields.items()
        }
        declared = lowered.pop("category", None)
        if declared is not None and str(declared).strip().lower() != category:
            raise InvalidIdentity(
                f"identity declares category '{declared}' but key requested for '{category}'"
            )

        strategy = self._strategies.get(category, self._default)
        canonical = canonicalize(strategy.select(lowered))
        if not canonical:
            raise InvalidIdentity(f"no identity fields left for category '{category}'")

        required = self._required_any.get(category)
        if required and not any(field in canonical for field in required):
            raise InvalidIdentity(
                f"category '{category}' requires one of: {', '.join(required)}"
            )

        document = json.dumps(
            {"category": category, "identity": canonical},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        digest = hashlib.sha256(document.encode("utf-8")).hexdigest()
        return f"{self._prefix}{category}:{digest}"
