"""
Schema registry for the DocStore SDK.

This module provides the registration step that stands in for generated
per-kind accessors:
- Registering kind declarations (in code, or from YAML/JSON declarations)
- Kind lookup by name
- Schema fingerprinting

The registry is frozen at startup to prevent runtime modifications.

Example:
    >>> from docstore_sdk import KindDef, get_registry, prop
    >>>
    >>> User = KindDef(name="User", properties=(prop("email", "str", indexed=True),))
    >>> registry = get_registry()
    >>> registry.register_kind(User)
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Iterator
from typing import Any

import yaml

from .schema import KindDef

# Global registry
_global_registry: SchemaRegistry | None = None
_registry_lock = threading.Lock()


class RegistryFrozenError(Exception):
    """Registry is frozen and cannot be modified."""

    pass


class DuplicateRegistrationError(Exception):
    """A kind with this name is already registered."""

    pass


class UnknownKindError(LookupError):
    """No kind with this name is registered."""

    pass


class SchemaRegistry:
    """Local schema registry for kind declarations.

    Example:
        >>> registry = SchemaRegistry()
        >>> registry.register_kind(User)
        >>> registry.register_kind(Task)
        >>> registry.freeze()
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._kinds: dict[str, KindDef] = {}
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register_kind(self, kind_def: KindDef) -> KindDef:
        """Register a kind.

        Returns:
            The registered KindDef, so declarations can be written inline

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the kind name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Cannot register: registry is frozen")

            if kind_def.name in self._kinds:
                raise DuplicateRegistrationError(f"kind '{kind_def.name}' already registered")

            self._kinds[kind_def.name] = kind_def
            return kind_def

    def load(self, declarations: dict[str, Any]) -> list[KindDef]:
        """Register every kind in a declaration document.

        The document has a top-level ``kinds`` list whose items follow
        ``KindDef.to_dict``.
        """
        return [self.register_kind(KindDef.from_dict(item)) for item in declarations.get("kinds", [])]

    def load_yaml(self, text: str) -> list[KindDef]:
        """Register every kind in a YAML declaration document.

        Example:
            >>> registry.load_yaml('''
            ... kinds:
            ...   - name: User
            ...     key_type: name
            ...     properties:
            ...       - {name: email, kind: str, indexed: true, required: true}
            ... ''')
        """
        return self.load(yaml.safe_load(text) or {})

    def get_kind(self, name: str) -> KindDef | None:
        """Get kind by name."""
        return self._kinds.get(name)

    def require_kind(self, name: str) -> KindDef:
        """Get kind by name, failing if it is not registered."""
        kind_def = self._kinds.get(name)
        if kind_def is None:
            raise UnknownKindError(f"kind '{name}' is not registered")
        return kind_def

    def kinds(self) -> Iterator[KindDef]:
        """Iterate over all kinds."""
        yield from self._kinds.values()

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def freeze(self) -> str:
        """Freeze registry and compute fingerprint.

        Returns:
            Schema fingerprint

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"kinds": [self._kinds[name].to_dict() for name in sorted(self._kinds)]}

    def to_json(self, indent: int | None = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)


def get_registry() -> SchemaRegistry:
    """Get the global schema registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = SchemaRegistry()
        return _global_registry


def register_kind(kind_def: KindDef) -> KindDef:
    """Register a kind in the global registry."""
    return get_registry().register_kind(kind_def)


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
