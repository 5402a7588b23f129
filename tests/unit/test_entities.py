"""
Unit tests for entity definitions and the registry.
"""

import pytest

from diffmigrate.entities import (
    EntityDefinition,
    EntityRegistry,
    ForeignKey,
    default_registry,
    validate_identifier,
)
from diffmigrate.exceptions import UnknownEntityError, ValidationError
from diffmigrate.graph import DependencyGraph
from diffmigrate.models import FKPolicy, TaskPriority


class TestValidateIdentifier:
    @pytest.mark.parametrize("value", ["offices", "legacy_office_id", "public.offices", "_x1"])
    def test_accepts_plain_identifiers(self, value):
        assert validate_identifier(value, "table") == value

    @pytest.mark.parametrize("value", ["", "1abc", "offices; drop table x", "a-b", "a.b.c"])
    def test_rejects_everything_else(self, value):
        with pytest.raises(ValidationError):
            validate_identifier(value, "table")


class TestForeignKey:
    def test_target_field_defaults_to_source(self):
        fk = ForeignKey("office_id", "offices", FKPolicy.SOFT)
        assert fk.target_field == "office_id"

    def test_explicit_destination_field(self):
        fk = ForeignKey("office_id", "offices", FKPolicy.SOFT, "primary_office_id")
        assert fk.target_field == "primary_office_id"


class TestEntityDefinition:
    """Tests for EntityDefinition."""

    def test_foreign_key_parents_become_dependencies(self):
        definition = EntityDefinition(
            name="patients",
            source_table="dispatch_patient",
            destination_table="patients",
            dependencies=("offices",),
            foreign_keys=(
                ForeignKey("doctor_id", "doctors", FKPolicy.STRICT),
                ForeignKey("office_id", "offices", FKPolicy.SOFT),
            ),
        )
        assert definition.dependencies == ("offices", "doctors")

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ValidationError):
            EntityDefinition(
                name="offices", source_table="offices;--", destination_table="offices"
            )

    def test_timestamp_field(self):
        definition = EntityDefinition("a", "a", "a", source_timestamp_column="modified")
        assert definition.timestamp_field() == "modified"
        assert EntityDefinition("b", "b", "b").timestamp_field("changed") == "changed"

    def test_to_task(self):
        definition = EntityDefinition(
            "doctors",
            "dispatch_doctor",
            "doctors",
            foreign_keys=(ForeignKey("office_id", "offices", FKPolicy.SOFT),),
            priority=TaskPriority.HIGH,
        )
        task = definition.to_task(batch_size=200)
        assert task.entity_type == "doctors"
        assert task.batch_size == 200
        assert task.priority == TaskPriority.HIGH
        assert task.dependencies == ("offices",)
        assert task.record_ids is None


class TestEntityRegistry:
    """Tests for EntityRegistry."""

    def test_register_and_get(self):
        registry = EntityRegistry()
        definition = EntityDefinition("offices", "dispatch_office", "offices")
        registry.register(definition)
        assert registry.get("offices") is definition
        assert "offices" in registry
        assert len(registry) == 1
        assert registry.names == ["offices"]

    def test_duplicate_registration_rejected(self):
        registry = EntityRegistry([EntityDefinition("offices", "a", "b")])
        with pytest.raises(ValidationError):
            registry.register(EntityDefinition("offices", "c", "d"))

    def test_unknown_entity(self):
        with pytest.raises(UnknownEntityError):
            EntityRegistry().get("widgets")

    def test_tasks_for(self, registry):
        tasks = registry.tasks_for(["offices", "doctors"], batch_size=50)
        assert [t.entity_type for t in tasks] == ["offices", "doctors"]
        assert all(t.batch_size == 50 for t in tasks)

    def test_prerequisites_are_transitive(self, registry):
        assert registry.prerequisites_of(["orders"]) == {"patients", "doctors", "offices"}
        assert registry.prerequisites_of(["offices"]) == set()

    def test_prerequisites_exclude_requested_unless_depended_on(self, registry):
        assert registry.prerequisites_of(["doctors", "patients"]) == {"doctors", "offices"}

    def test_unregistered_prerequisite_not_expanded(self):
        registry = EntityRegistry([EntityDefinition("a", "a", "a", dependencies=("external",))])
        assert registry.prerequisites_of(["a"]) == {"external"}
        with pytest.raises(UnknownEntityError):
            registry.prerequisites_of(["missing"])


class TestDefaultRegistry:
    """Tests for the standard dispatch layout."""

    def test_has_expected_entities(self, registry):
        assert {"offices", "doctors", "patients", "orders", "cases", "files"} <= set(
            registry.names
        )

    def test_legacy_id_columns(self, registry):
        assert registry.get("offices").legacy_id_column == "legacy_office_id"
        assert registry.get("orders").legacy_id_column == "legacy_instruction_id"

    def test_declared_policies(self, doctors, patients):
        assert doctors.foreign_keys[0].policy == FKPolicy.SOFT
        assert doctors.foreign_keys[0].target_field == "primary_office_id"
        policies = {fk.source_field: fk.policy for fk in patients.foreign_keys}
        assert policies == {"doctor_id": FKPolicy.STRICT, "office_id": FKPolicy.SOFT}

    def test_registry_is_acyclic(self, registry):
        graph = DependencyGraph.from_tasks(registry.tasks_for(registry.names))
        order = graph.order()
        assert order.index("offices") < order.index("doctors") < order.index("patients")
        assert order.index("messages") < order.index("message_files")

    def test_each_call_returns_new_registry(self):
        assert default_registry() is not default_registry()
