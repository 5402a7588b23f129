"""
Entity definitions and the entity registry.

An EntityDefinition describes how one logical entity type is laid out in
the source and destination stores, which other entities it depends on, and
how each of its foreign keys is resolved. Foreign key policies are always
declared explicitly; nothing is inferred from nullability.

Example:
    >>> registry = EntityRegistry()
    >>> registry.register(EntityDefinition(
    ...     name="offices",
    ...     source_table="dispatch_office",
    ...     destination_table="offices",
    ...     legacy_id_column="legacy_office_id",
    ... ))
    >>> registry.register(EntityDefinition(
    ...     name="doctors",
    ...     source_table="dispatch_doctor",
    ...     destination_table="doctors",
    ...     legacy_id_column="legacy_doctor_id",
    ...     foreign_keys=(
    ...         ForeignKey("office_id", "offices", FKPolicy.STRICT),
    ...     ),
    ... ))
    >>> registry.get("doctors").dependencies
    ('offices',)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from diffmigrate.config import RecordFilter
from diffmigrate.exceptions import UnknownEntityError, ValidationError
from diffmigrate.models import FKPolicy, MigrationTask, TaskPriority

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def validate_identifier(value: str, field_name: str) -> str:
    """
    Check that a table or column name is a plain SQL identifier.

    Stores interpolate these names into SQL text, so anything else is rejected.

    Raises:
        ValidationError: If the value is not a plain identifier.
    """
    if not _IDENTIFIER.match(value):
        raise ValidationError(
            f"{field_name} must be a plain SQL identifier, got {value!r}",
            field_name=field_name,
            value=value,
        )
    return value


@dataclass(frozen=True)
class ForeignKey:
    """
    A reference from a dependent entity to a parent entity.

    Attributes:
        source_field: Source column holding the parent's legacy id.
        parent_entity: Entity type the key points to.
        policy: STRICT skips the record when unresolved; SOFT writes null.
        destination_field: Destination column receiving the parent's
            destination id (defaults to source_field).
    """

    source_field: str
    parent_entity: str
    policy: FKPolicy
    destination_field: str | None = None

    def __post_init__(self) -> None:
        validate_identifier(self.source_field, "source_field")
        if self.destination_field is not None:
            validate_identifier(self.destination_field, "destination_field")

    @property
    def target_field(self) -> str:
        return self.destination_field or self.source_field


@dataclass(frozen=True)
class EntityDefinition:
    """
    How one entity type is stored on both sides.

    Attributes:
        name: Logical entity type (e.g., "patients").
        source_table: Legacy table.
        destination_table: Modern table.
        source_id_column: Legacy primary key column.
        source_timestamp_column: Legacy last-modified column; None uses the
            detection config's timestamp_field.
        legacy_id_column: Destination column preserving the legacy id.
        destination_id_column: Destination primary key column.
        destination_timestamp_column: Destination last-modified column.
        content_hash_column: Destination column holding the content hash.
        dependencies: Extra prerequisites beyond those implied by foreign keys.
        foreign_keys: Declared foreign keys with their policies.
        priority: Default task priority.
        record_filter: Entity-level inclusion predicate, if any.
    """

    name: str
    source_table: str
    destination_table: str
    source_id_column: str = "id"
    source_timestamp_column: str | None = None
    legacy_id_column: str = "legacy_id"
    destination_id_column: str = "id"
    destination_timestamp_column: str = "updated_at"
    content_hash_column: str | None = None
    dependencies: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    priority: TaskPriority = TaskPriority.MEDIUM
    record_filter: RecordFilter | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("entity name must not be empty", field_name="name")
        for attr in (
            "source_table",
            "destination_table",
            "source_id_column",
            "legacy_id_column",
            "destination_id_column",
            "destination_timestamp_column",
        ):
            validate_identifier(getattr(self, attr), attr)
        if self.content_hash_column is not None:
            validate_identifier(self.content_hash_column, "content_hash_column")
        if self.source_timestamp_column is not None:
            validate_identifier(self.source_timestamp_column, "source_timestamp_column")

        # Foreign key parents are always prerequisites
        merged = list(self.dependencies)
        for fk in self.foreign_keys:
            if fk.parent_entity not in merged and fk.parent_entity != self.name:
                merged.append(fk.parent_entity)
        object.__setattr__(self, "dependencies", tuple(merged))

    def timestamp_field(self, default: str = "updated_at") -> str:
        """Source column holding the last-modified timestamp."""
        return self.source_timestamp_column or default

    def to_task(self, batch_size: int = 500) -> MigrationTask:
        """Build a whole-entity migration task from this definition."""
        return MigrationTask(
            entity_type=self.name,
            batch_size=batch_size,
            priority=self.priority,
            dependencies=self.dependencies,
        )


class EntityRegistry:
    """
    Lookup of entity definitions by name.

    Owned by whoever constructs the detector, executor and coordinator;
    there is no module-level registry instance.
    """

    def __init__(self, definitions: Iterable[EntityDefinition] = ()) -> None:
        self._definitions: dict[str, EntityDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: EntityDefinition) -> None:
        if definition.name in self._definitions:
            raise ValidationError(
                f"Entity {definition.name} is already registered",
                field_name="name",
                value=definition.name,
            )
        self._definitions[definition.name] = definition

    def get(self, name: str) -> EntityDefinition:
        """
        Get an entity definition.

        Raises:
            UnknownEntityError: If the entity is not registered.
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownEntityError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[EntityDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def names(self) -> list[str]:
        return list(self._definitions)

    def prerequisites_of(self, names: Iterable[str]) -> set[str]:
        """
        Every entity the named entities transitively depend on.

        The named entities themselves are not included unless one depends on
        another. Unregistered prerequisites are returned but not expanded.
        """
        found: set[str] = set()
        pending = [dep for name in names for dep in self.get(name).dependencies]
        while pending:
            name = pending.pop()
            if name in found:
                continue
            found.add(name)
            if name in self._definitions:
                pending.extend(self._definitions[name].dependencies)
        return found

    def tasks_for(self, names: Iterable[str], batch_size: int = 500) -> list[MigrationTask]:
        """Build whole-entity tasks for the named entities."""
        return [self.get(name).to_task(batch_size) for name in names]


def _legacy(name: str) -> str:
    return f"legacy_{name}_id"


def default_registry() -> EntityRegistry:
    """
    Registry for the legacy dispatch schema.

    Returns:
        A new EntityRegistry with the standard entity layout.
    """
    return EntityRegistry(
        [
            EntityDefinition(
                name="offices",
                source_table="dispatch_office",
                destination_table="offices",
                legacy_id_column=_legacy("office"),
                priority=TaskPriority.HIGH,
            ),
            EntityDefinition(
                name="profiles",
                source_table="auth_user",
                destination_table="profiles",
                legacy_id_column=_legacy("user"),
                source_timestamp_column="last_login",
                priority=TaskPriority.HIGH,
            ),
            EntityDefinition(
                name="doctors",
                source_table="dispatch_doctor",
                destination_table="doctors",
                legacy_id_column=_legacy("doctor"),
                foreign_keys=(
                    ForeignKey("office_id", "offices", FKPolicy.SOFT, "primary_office_id"),
                ),
                priority=TaskPriority.HIGH,
            ),
            EntityDefinition(
                name="doctor_offices",
                source_table="dispatch_office_doctors",
                destination_table="doctor_offices",
                legacy_id_column=_legacy("doctor_office"),
                foreign_keys=(
                    ForeignKey("doctor_id", "doctors", FKPolicy.STRICT),
                    ForeignKey("office_id", "offices", FKPolicy.STRICT),
                ),
            ),
            EntityDefinition(
                name="patients",
                source_table="dispatch_patient",
                destination_table="patients",
                legacy_id_column=_legacy("patient"),
                foreign_keys=(
                    ForeignKey("doctor_id", "doctors", FKPolicy.STRICT),
                    ForeignKey("office_id", "offices", FKPolicy.SOFT),
                ),
            ),
            EntityDefinition(
                name="orders",
                source_table="dispatch_instruction",
                destination_table="orders",
                legacy_id_column=_legacy("instruction"),
                foreign_keys=(ForeignKey("patient_id", "patients", FKPolicy.STRICT),),
            ),
            EntityDefinition(
                name="cases",
                source_table="dispatch_case",
                destination_table="cases",
                legacy_id_column=_legacy("case"),
                foreign_keys=(
                    ForeignKey("instruction_id", "orders", FKPolicy.SOFT, "order_id"),
                    ForeignKey("patient_id", "patients", FKPolicy.STRICT),
                ),
            ),
            EntityDefinition(
                name="files",
                source_table="dispatch_file",
                destination_table="files",
                legacy_id_column=_legacy("file"),
                priority=TaskPriority.LOW,
            ),
            EntityDefinition(
                name="case_files",
                source_table="dispatch_case_files",
                destination_table="case_files",
                legacy_id_column=_legacy("case_file"),
                foreign_keys=(
                    ForeignKey("case_id", "cases", FKPolicy.STRICT),
                    ForeignKey("file_id", "files", FKPolicy.STRICT),
                ),
                priority=TaskPriority.LOW,
            ),
            EntityDefinition(
                name="messages",
                source_table="dispatch_record",
                destination_table="messages",
                legacy_id_column=_legacy("record"),
                foreign_keys=(ForeignKey("case_id", "cases", FKPolicy.SOFT),),
            ),
            EntityDefinition(
                name="message_files",
                source_table="dispatch_record_files",
                destination_table="message_files",
                legacy_id_column=_legacy("record_file"),
                foreign_keys=(
                    ForeignKey("record_id", "messages", FKPolicy.STRICT, "message_id"),
                    ForeignKey("file_id", "files", FKPolicy.STRICT),
                ),
                priority=TaskPriority.LOW,
            ),
            EntityDefinition(
                name="jaws",
                source_table="dispatch_jaw",
                destination_table="jaws",
                legacy_id_column=_legacy("jaw"),
                foreign_keys=(ForeignKey("patient_id", "patients", FKPolicy.STRICT),),
            ),
            EntityDefinition(
                name="products",
                source_table="dispatch_product",
                destination_table="products",
                legacy_id_column=_legacy("product"),
                priority=TaskPriority.HIGH,
            ),
            EntityDefinition(
                name="order_products",
                source_table="dispatch_instruction_products",
                destination_table="order_products",
                legacy_id_column=_legacy("instruction_product"),
                foreign_keys=(
                    ForeignKey("instruction_id", "orders", FKPolicy.STRICT, "order_id"),
                    ForeignKey("product_id", "products", FKPolicy.STRICT),
                ),
            ),
        ]
    )


__all__ = [
    "ForeignKey",
    "EntityDefinition",
    "EntityRegistry",
    "default_registry",
    "validate_identifier",
]
